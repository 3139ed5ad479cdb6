"""
Webhook Ingestor
================

Applies store-style lifecycle events pushed by an external source.

Every payload is first recorded verbatim as a ``WebhookEvent`` row and
committed, whatever its type.  Then:

- ``initial_purchase`` / ``renewal`` / ``non_renewing_purchase``:
  supersede the subscriber's active subscription and entitlement for
  the product, exactly like a verified receipt.
- ``cancellation`` / ``expiration``: deactivate **all** active
  subscriptions and entitlements of the subscriber.  A ``product_id``
  in the payload is recorded but does not narrow this.
- anything else: audit only.

Accepts both a flat body and a RevenueCat-style ``{"event": {...}}``
envelope.  Event types match case-insensitively.

Idempotency:
    Events carrying an ``id`` are remembered in Redis (with TTL) after a
    successful apply; a redelivery is audited again but not re-applied.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from openrevenue.config import settings
from openrevenue.core.errors import ErrorCodes, ValidationError
from openrevenue.models.audit import EventType, WebhookEvent
from openrevenue.models.subscription import Store, StoreEnvironment
from openrevenue.services.cache import CacheKeys, CacheManager
from openrevenue.services.locks import subscriber_key
from openrevenue.services.purchases import (
    MAX_EVENT_TYPE_LENGTH,
    MAX_ID_LENGTH,
    PurchaseFact,
    parse_store,
)
from openrevenue.services.reconciler import SubscriberService
from openrevenue.services.tenants import Tenant
from openrevenue.utils.helpers import bounded_text, from_millis, utc_now

logger = logging.getLogger(__name__)


PURCHASE_TYPES = frozenset({"initial_purchase", "renewal", "non_renewing_purchase"})
TERMINAL_TYPES = frozenset({"cancellation", "expiration"})

UNKNOWN_TYPE = "unknown"


@dataclass
class WebhookOutcome:
    """What ingesting one webhook did."""
    event_type: str
    app_user_id: Optional[str]
    applied: bool = False
    duplicate: bool = False
    projection: Optional[dict[str, Any]] = None


def unwrap_event(payload: dict[str, Any]) -> dict[str, Any]:
    """Return the event object from either a flat body or an ``{"event": {...}}`` envelope."""
    event = payload.get("event")
    if isinstance(event, dict):
        return event
    return payload


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else value


def purchase_fact_from_event(event: dict[str, Any], product_id: str) -> PurchaseFact:
    """
    Build a purchase fact from a webhook event.

    Missing purchase time defaults to now, missing expiry to the purchase
    time plus ``WEBHOOK_DEFAULT_PERIOD_DAYS``.
    """
    purchase_time = (
        from_millis(event.get("purchase_date_ms"))
        or from_millis(event.get("purchased_at_ms"))
        or utc_now()
    )
    expiry_time = (
        from_millis(event.get("expires_date_ms"))
        or from_millis(event.get("expiration_at_ms"))
        or purchase_time + timedelta(days=settings.WEBHOOK_DEFAULT_PERIOD_DAYS)
    )

    entitlement_id = bounded_text(event.get("entitlement_id"), MAX_ID_LENGTH)
    if entitlement_id is None:
        entitlement_ids = event.get("entitlement_ids")
        if isinstance(entitlement_ids, list) and entitlement_ids:
            entitlement_id = bounded_text(entitlement_ids[0], MAX_ID_LENGTH)

    environment = (
        StoreEnvironment.SANDBOX.value
        if str(event.get("environment") or "").lower() == StoreEnvironment.SANDBOX.value
        else StoreEnvironment.PRODUCTION.value
    )

    amount_cents = None
    price = event.get("price_in_purchased_currency", event.get("price"))
    if isinstance(price, (int, float)) and not isinstance(price, bool):
        amount_cents = int(round(price * 100))

    return PurchaseFact(
        store=parse_store(event.get("store")) or Store.APP_STORE.value,
        product_id=product_id,
        entitlement_id=entitlement_id or product_id,
        transaction_id=bounded_text(event.get("transaction_id"), MAX_ID_LENGTH),
        purchase_time=purchase_time,
        expiry_time=expiry_time,
        environment=environment,
        amount_cents=amount_cents,
        currency=bounded_text(event.get("currency"), 3),
    )


class WebhookIngestor:
    """Service for applying webhook events."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.subscribers = SubscriberService(db)

    async def ingest(self, tenant: Tenant, payload: dict[str, Any]) -> WebhookOutcome:
        event = unwrap_event(payload)
        event_type = _clip(
            (_text(event.get("type")) or UNKNOWN_TYPE).lower(), MAX_EVENT_TYPE_LENGTH
        )
        app_user_id = _text(event.get("app_user_id"))
        event_id = _text(event.get("id"))

        # Audit first, whatever happens next; identifiers clipped to column width
        self.db.add(
            WebhookEvent(
                app_id=tenant.app_id,
                type=event_type,
                app_user_id=_clip(app_user_id, MAX_ID_LENGTH),
                external_event_id=_clip(event_id, MAX_ID_LENGTH),
                payload=payload,
            )
        )
        await self.db.commit()

        logger.info(
            "Webhook received: app=%s type=%s user=%s event_id=%s",
            tenant.app_id, event_type, app_user_id, event_id,
        )
        outcome = WebhookOutcome(event_type=event_type, app_user_id=app_user_id)

        if event_type not in PURCHASE_TYPES and event_type not in TERMINAL_TYPES:
            logger.info("Webhook type %s recorded without state change", event_type)
            return outcome

        if not app_user_id:
            raise ValidationError(
                "app_user_id is required for this event type",
                code=ErrorCodes.MISSING_APP_USER_ID,
            )

        product_id = _text(event.get("product_id"))
        if event_type in PURCHASE_TYPES and not product_id:
            raise ValidationError(
                "product_id is required for purchase events",
                code=ErrorCodes.MISSING_PRODUCT_ID,
            )

        for field, value in (("app_user_id", app_user_id), ("product_id", product_id)):
            if value and len(value) > MAX_ID_LENGTH:
                raise ValidationError(
                    f"{field} must be at most {MAX_ID_LENGTH} characters",
                    code=ErrorCodes.INVALID_PAYLOAD,
                    details={"field": field},
                )

        idempotency_key = CacheKeys.webhook_event(str(tenant.app_id), event_id) if event_id else None
        if idempotency_key and await CacheManager.exists(idempotency_key):
            logger.info("Duplicate webhook event %s, skipping", event_id)
            outcome.duplicate = True
            return outcome

        async with self.subscribers.locks.hold(subscriber_key(tenant.app_id, app_user_id)):
            await self.subscribers.upsert_subscriber(tenant, app_user_id)

            if event_type in PURCHASE_TYPES:
                fact = purchase_fact_from_event(event, product_id)
                await self.subscribers.supersede(tenant, app_user_id, fact)
                self.subscribers.record_event(
                    tenant,
                    EventType.webhook(event_type),
                    app_user_id=app_user_id,
                    product_id=product_id,
                    amount_cents=fact.amount_cents,
                    currency=fact.currency,
                    payload=event,
                )
            else:
                subscriptions, entitlements = await self.subscribers.deactivate_all(
                    tenant, app_user_id
                )
                self.subscribers.record_event(
                    tenant,
                    EventType.webhook(event_type),
                    app_user_id=app_user_id,
                    product_id=product_id,
                    payload=event,
                )
                logger.info(
                    "Webhook %s: deactivated %s subscriptions and %s entitlements for %s",
                    event_type, subscriptions, entitlements, app_user_id,
                )

            projections = await self.subscribers.publish(tenant, app_user_id)

        if idempotency_key:
            await CacheManager.set(
                idempotency_key, 1, ttl=settings.WEBHOOK_IDEMPOTENCY_TTL_SECONDS
            )

        outcome.applied = True
        outcome.projection = projections[app_user_id]
        logger.info(
            "Webhook processed: app=%s type=%s user=%s event_id=%s",
            tenant.app_id, event_type, app_user_id, event_id,
        )
        return outcome
