"""
Receipts API Endpoints
======================

Receipt submission: verify a purchase with its store, then reconcile
the subscriber's subscriptions and entitlements.
"""

import logging

from fastapi import APIRouter

from openrevenue.dependencies import CurrentTenant, DBSession, Verifier
from openrevenue.schemas.receipt import ReceiptRequest
from openrevenue.schemas.subscriber import CustomerInfoResponse
from openrevenue.services.purchases import StoreCredentials
from openrevenue.services.reconciler import SubscriberService
from openrevenue.services.tenants import TenantService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=CustomerInfoResponse)
async def submit_receipt(
    body: ReceiptRequest,
    tenant: CurrentTenant,
    db: DBSession,
    verifier: Verifier,
):
    """
    Verify a receipt and record the purchase.

    Failures are audited and answered with ``receipt_validation_failed``
    (400), ``store_not_configured`` (500) or ``store_unavailable`` (503).
    """
    app = await TenantService(db).get_app(tenant.app_id)
    credentials = StoreCredentials.from_app(app)
    # No transaction stays open across the store round-trip
    await db.commit()

    claim = body.to_claim()
    result = await verifier.verify(credentials, claim)

    projection = await SubscriberService(db).reconcile(tenant, claim, result)
    return CustomerInfoResponse.build(projection)
