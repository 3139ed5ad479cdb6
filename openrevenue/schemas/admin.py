"""
Admin Schemas
=============

Pydantic schemas for tenant administration.
"""

from datetime import datetime
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field


class StoreCredentialsFields(BaseModel):
    """Store credentials settable on an app."""

    app_store_shared_secret: Optional[str] = None
    app_store_bundle_id: Optional[str] = None
    play_store_service_account_json: Optional[str] = None
    play_store_package_name: Optional[str] = None


class AppCreateRequest(StoreCredentialsFields):
    """Create a tenant app."""

    name: str = Field(min_length=1, max_length=255)


class AppResponse(BaseModel):
    """Tenant app. Secrets are reported as configured/not, never echoed."""

    model_config = ConfigDict(from_attributes=True)

    app_id: uuid.UUID
    name: str
    api_key: str
    created_at: datetime
    app_store_configured: bool = False
    play_store_configured: bool = False

    @classmethod
    def from_app(cls, app) -> "AppResponse":
        return cls(
            app_id=app.app_id,
            name=app.name,
            api_key=app.api_key,
            created_at=app.created_at,
            app_store_configured=bool(app.app_store_shared_secret),
            play_store_configured=bool(app.play_store_service_account_json),
        )


class AppKeyCreateRequest(BaseModel):
    """Issue an additional API key."""

    label: Optional[str] = Field(default=None, max_length=255)


class AppKeyResponse(BaseModel):
    """Additional API key."""

    model_config = ConfigDict(from_attributes=True)

    key_id: uuid.UUID
    app_id: uuid.UUID
    key: str
    label: Optional[str] = None
    created_at: datetime
    revoked_at: Optional[datetime] = None
