"""
Webhooks API Endpoints
======================

Receives subscription lifecycle events for the calling tenant.

Authentication:
    Same API key as every other /v1 route.

Idempotency:
    Events carrying an ``id`` are applied once; redeliveries are recorded
    and acknowledged with ``"duplicate": true``.
"""

import json
import logging

from fastapi import APIRouter, Request

from openrevenue.core.errors import AppException, ValidationError
from openrevenue.dependencies import CurrentTenant, DBSession
from openrevenue.schemas.webhook import WebhookResponse
from openrevenue.services.webhook_ingestor import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=WebhookResponse, response_model_exclude_none=True)
async def receive_webhook(
    request: Request,
    tenant: CurrentTenant,
    db: DBSession,
):
    """
    Ingest a webhook event.

    Body is either the event itself (``{"type": ..., "app_user_id": ...}``)
    or an envelope ``{"event": {...}}``.

    Events handled:
    - INITIAL_PURCHASE / RENEWAL / NON_RENEWING_PURCHASE
    - CANCELLATION / EXPIRATION (all of the subscriber's access)
    - anything else is recorded only
    """
    # ── Parse payload ─────────────────────────────────────────────────────
    try:
        body = await request.body()
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Invalid webhook payload: %s", e)
        raise ValidationError("Invalid JSON payload")

    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    # ── Process event ─────────────────────────────────────────────────────
    try:
        outcome = await WebhookIngestor(db).ingest(tenant, payload)
    except AppException:
        raise
    except Exception:
        logger.exception("Webhook processing error: app=%s", tenant.app_id)
        raise

    return WebhookResponse(duplicate=True if outcome.duplicate else None)
