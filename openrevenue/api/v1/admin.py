"""
Admin API Endpoints
===================

Tenant administration behind HTTP Basic auth (``ADMIN_USERNAME`` /
``ADMIN_PASSWORD``).  Without a configured password every admin route
answers 500 ``basic_auth_not_configured``.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, status

from openrevenue.dependencies import DBSession, require_admin
from openrevenue.schemas.admin import (
    AppCreateRequest,
    AppKeyCreateRequest,
    AppKeyResponse,
    AppResponse,
    StoreCredentialsFields,
)
from openrevenue.schemas.common import StatusResponse
from openrevenue.services.tenants import TenantService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/health", response_model=StatusResponse)
async def admin_health():
    return StatusResponse()


@router.post("/apps", response_model=AppResponse, status_code=status.HTTP_201_CREATED)
async def create_app(body: AppCreateRequest, db: DBSession):
    """Create a tenant app. The response carries its API key."""
    app = await TenantService(db).create_app(**body.model_dump())
    await db.commit()
    return AppResponse.from_app(app)


@router.get("/apps/{app_id}", response_model=AppResponse)
async def get_app(app_id: uuid.UUID, db: DBSession):
    app = await TenantService(db).get_app(app_id)
    return AppResponse.from_app(app)


@router.patch("/apps/{app_id}/stores", response_model=AppResponse)
async def configure_stores(app_id: uuid.UUID, body: StoreCredentialsFields, db: DBSession):
    """Set store credentials. Omitted fields are left unchanged."""
    app = await TenantService(db).configure_stores(app_id, **body.model_dump(exclude_unset=True))
    await db.commit()
    logger.info("Updated store credentials for app %s", app_id)
    return AppResponse.from_app(app)


@router.post(
    "/apps/{app_id}/keys",
    response_model=AppKeyResponse,
    status_code=status.HTTP_201_CREATED,
)
async def issue_key(app_id: uuid.UUID, body: AppKeyCreateRequest, db: DBSession):
    key = await TenantService(db).issue_key(app_id, label=body.label)
    await db.commit()
    return AppKeyResponse.model_validate(key)


@router.delete("/apps/{app_id}/keys/{key_id}", response_model=AppKeyResponse)
async def revoke_key(app_id: uuid.UUID, key_id: uuid.UUID, db: DBSession):
    key = await TenantService(db).revoke_key(app_id, key_id)
    await db.commit()
    return AppKeyResponse.model_validate(key)
