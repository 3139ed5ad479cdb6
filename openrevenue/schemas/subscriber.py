"""
Subscriber Schemas
==================

Pydantic schemas for subscriber endpoints.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from openrevenue.utils.helpers import format_datetime, to_millis, utc_now


class CustomerInfoResponse(BaseModel):
    """Customer info envelope returned by every subscriber-facing endpoint."""

    request_date: str
    request_date_ms: int
    subscriber: dict[str, Any]

    @classmethod
    def build(
        cls,
        subscriber: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> "CustomerInfoResponse":
        now = now or utc_now()
        return cls(
            request_date=format_datetime(now),
            request_date_ms=to_millis(now),
            subscriber=subscriber,
        )


class AttributesRequest(BaseModel):
    """Subscriber attribute update. Values are merged into existing attributes."""

    attributes: dict[str, str] = Field(default_factory=dict)


class IdentifyRequest(BaseModel):
    """Merge ``app_user_id`` (typically anonymous) into ``new_app_user_id``."""

    app_user_id: str = Field(min_length=1, max_length=255)
    new_app_user_id: str = Field(min_length=1, max_length=255)
