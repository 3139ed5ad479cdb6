"""
Subscribers API Endpoints
=========================

Customer info reads, attribute updates and identity merges.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Path, Response, status

from openrevenue.dependencies import CurrentTenant, DBSession, LazyDBSession
from openrevenue.schemas.subscriber import (
    AttributesRequest,
    CustomerInfoResponse,
    IdentifyRequest,
)
from openrevenue.services.reconciler import SubscriberService, get_customer_info

logger = logging.getLogger(__name__)

router = APIRouter()

# Same width as the subscribers.app_user_id column
AppUserId = Annotated[str, Path(min_length=1, max_length=255)]


@router.post("/identify", response_model=CustomerInfoResponse)
async def identify_subscriber(
    body: IdentifyRequest,
    tenant: CurrentTenant,
    db: DBSession,
    response: Response,
):
    """
    Merge ``app_user_id`` into ``new_app_user_id``.

    Returns 201 when ``new_app_user_id`` did not exist before, else 200.
    """
    projection, created = await SubscriberService(db).identify(
        tenant, body.app_user_id, body.new_app_user_id
    )
    if created:
        response.status_code = status.HTTP_201_CREATED
    return CustomerInfoResponse.build(projection)


@router.get("/{app_user_id}", response_model=CustomerInfoResponse)
async def get_subscriber(
    app_user_id: AppUserId,
    tenant: CurrentTenant,
    lazy_db: LazyDBSession,
):
    """
    Get customer info.

    Served from the projection cache when possible (no database access).
    On a miss the subscriber is created if unknown and the projection is
    rebuilt from durable state.
    """
    projection = await get_customer_info(tenant, app_user_id, lazy_db)
    return CustomerInfoResponse.build(projection)


@router.post(
    "/{app_user_id}/attributes",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def update_attributes(
    app_user_id: AppUserId,
    body: AttributesRequest,
    tenant: CurrentTenant,
    db: DBSession,
):
    """Merge subscriber attributes."""
    await SubscriberService(db).update_attributes(tenant, app_user_id, body.attributes)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
