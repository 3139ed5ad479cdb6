"""
Health and Fallback Endpoints
=============================
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from openrevenue.core.errors import ErrorCodes, Resolution
from openrevenue.dependencies import CurrentTenant
from openrevenue.schemas.common import StatusResponse

router = APIRouter()

# Mounted after every other /v1 router
fallback_router = APIRouter()


@router.get("/health", response_model=StatusResponse)
async def health():
    """Liveness check. No API key required."""
    return StatusResponse()


@fallback_router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
async def not_implemented(path: str, tenant: CurrentTenant):
    """Any other authenticated /v1 route."""
    return JSONResponse(
        status_code=status.HTTP_501_NOT_IMPLEMENTED,
        content={
            "error": ErrorCodes.NOT_IMPLEMENTED,
            "message": "Endpoint not implemented.",
            "resolution": Resolution.FIX_REQUEST,
        },
    )
