"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from openrevenue.config import settings
from openrevenue.core.errors import (
    AuthenticationError,
    ErrorCodes,
    ForbiddenError,
    ServerMisconfiguredError,
)
from openrevenue.core.security import parse_api_key, verify_basic_auth
from openrevenue.db.session import LazyDB, get_db, get_lazy_db
from openrevenue.services.store_verifier import StoreVerifier
from openrevenue.services.tenants import Tenant, resolve_tenant

logger = logging.getLogger(__name__)

# Database session dependencies
DBSession = Annotated[AsyncSession, Depends(get_db)]
LazyDBSession = Annotated[LazyDB, Depends(get_lazy_db)]

ADMIN_REALM = "OpenRevenue Admin"


# =============================================================================
# Tenant (API key) Auth
# =============================================================================

async def get_tenant(
    request: Request,
    lazy_db: LazyDBSession,
    authorization: Annotated[Optional[str], Header()] = None,
    x_api_key: Annotated[Optional[str], Header()] = None,
) -> Tenant:
    """
    Resolve the calling tenant from its API key.

    Raises:
        AuthenticationError: 401 if no key was sent
        ForbiddenError: 403 if the key is unknown or revoked
    """
    api_key = parse_api_key(authorization, x_api_key)
    if api_key is None:
        raise AuthenticationError(
            code=ErrorCodes.MISSING_API_KEY,
            message="Send the API key as 'Authorization: Bearer <key>' or 'X-API-Key'",
        )

    tenant = await resolve_tenant(api_key, lazy_db)
    if tenant is None:
        logger.info("Rejected unknown API key on %s", request.url.path)
        raise ForbiddenError(
            code=ErrorCodes.INVALID_API_KEY,
            message="API key is invalid or revoked",
        )

    # Picked up by the New Relic middleware
    request.state.tenant_app_id = str(tenant.app_id)
    return tenant


CurrentTenant = Annotated[Tenant, Depends(get_tenant)]


# =============================================================================
# Admin (HTTP Basic) Auth
# =============================================================================

async def require_admin(
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """Guard for /admin routes."""
    if not settings.admin_configured:
        raise ServerMisconfiguredError(
            code=ErrorCodes.BASIC_AUTH_NOT_CONFIGURED,
            message="Set ADMIN_PASSWORD.",
        )

    if not verify_basic_auth(authorization, settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD):
        raise AuthenticationError(
            code=ErrorCodes.UNAUTHORIZED,
            message="Unauthorized",
            headers={"WWW-Authenticate": f'Basic realm="{ADMIN_REALM}"'},
        )


# =============================================================================
# Store Verifier
# =============================================================================

def get_store_verifier() -> StoreVerifier:
    """Store verifier for the request. Tests override this dependency."""
    return StoreVerifier()


Verifier = Annotated[StoreVerifier, Depends(get_store_verifier)]
