"""
Webhook Schemas
===============

Pydantic schemas for the webhook endpoint.
"""

from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Acknowledgement; ``duplicate`` is set when a redelivered event was skipped."""

    status: str = "ok"
    duplicate: Optional[bool] = None
