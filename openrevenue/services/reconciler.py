"""
Subscriber Service
==================

The single write path for subscriber state.

Handles:
- Lazy subscriber creation (upsert) and ``last_seen`` tracking
- Receipt reconciliation: verified purchase -> superseding subscription
  and entitlement rows, receipt audit row, event log entry
- Attribute updates
- Identity merges (anonymous id -> known id)
- Write-through of the customer-info projection after every commit

Every mutation holds the subscriber's lock from ``subscriber_locks``
until after its commit, so a deactivate-then-insert never interleaves
with another writer for the same subscriber.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from openrevenue.core.errors import InvariantViolationError, ReceiptValidationError
from openrevenue.db.session import LazyDB
from openrevenue.models.audit import Event, EventType, Receipt, ReceiptStatus
from openrevenue.models.subscriber import Subscriber
from openrevenue.models.subscription import Entitlement, Subscription
from openrevenue.services.customer_info import CustomerInfoProjector, ProjectionCache
from openrevenue.services.locks import KeyedLocks, subscriber_key, subscriber_locks
from openrevenue.services.purchases import (
    PurchaseFact,
    ReceiptClaim,
    VerificationFailure,
    VerificationResult,
)
from openrevenue.services.tenants import Tenant
from openrevenue.utils.helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)


def _subscription_rank(row: Subscription) -> tuple:
    return (ensure_utc(row.purchase_date), ensure_utc(row.created_at))


def _entitlement_rank(row: Entitlement) -> tuple:
    # Non-expiring outranks any expiry
    expires = ensure_utc(row.expires_date)
    return (expires is None, expires or datetime.min, ensure_utc(row.created_at))


class SubscriberService:
    """Service for subscriber state mutations."""

    def __init__(self, db: AsyncSession, locks: KeyedLocks = subscriber_locks):
        self.db = db
        self.locks = locks

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    async def upsert_subscriber(
        self,
        tenant: Tenant,
        app_user_id: str,
        attributes: Optional[dict[str, str]] = None,
    ) -> tuple[Subscriber, bool]:
        """
        Get or create a subscriber and bump ``last_seen``.

        Returns:
            (subscriber, created)
        """
        stmt = (
            select(Subscriber)
            .where(
                Subscriber.app_id == tenant.app_id,
                Subscriber.app_user_id == app_user_id,
            )
            .with_for_update()
        )
        now = utc_now()

        subscriber = await self.db.scalar(stmt)
        if subscriber is None:
            subscriber = Subscriber(
                app_id=tenant.app_id,
                app_user_id=app_user_id,
                first_seen=now,
                last_seen=now,
                attributes=dict(attributes or {}),
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(subscriber)
                return subscriber, True
            except IntegrityError:
                # Another process created it first
                logger.info("Subscriber %s/%s created concurrently", tenant.app_id, app_user_id)
                subscriber = await self.db.scalar(stmt)
                if subscriber is None:
                    raise

        subscriber.last_seen = now
        if attributes:
            subscriber.attributes = {**(subscriber.attributes or {}), **attributes}
        await self.db.flush()
        return subscriber, False

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    async def supersede(
        self,
        tenant: Tenant,
        app_user_id: str,
        fact: PurchaseFact,
    ) -> tuple[Subscription, Entitlement]:
        """
        Replace the active subscription for the product and the active
        entitlement for the identifier with new active rows.

        Deactivation is a conditional UPDATE against durable state; the
        caller must hold the subscriber lock.
        """
        await self.db.execute(
            update(Subscription)
            .where(
                Subscription.app_id == tenant.app_id,
                Subscription.app_user_id == app_user_id,
                Subscription.product_id == fact.product_id,
                Subscription.is_active.is_(True),
            )
            .values(is_active=False)
        )
        subscription = Subscription(
            app_id=tenant.app_id,
            app_user_id=app_user_id,
            product_id=fact.product_id,
            store=fact.store,
            transaction_id=fact.transaction_id,
            purchase_date=fact.purchase_time,
            expires_date=fact.expiry_time,
            environment=fact.environment,
            is_active=True,
        )
        self.db.add(subscription)

        await self.db.execute(
            update(Entitlement)
            .where(
                Entitlement.app_id == tenant.app_id,
                Entitlement.app_user_id == app_user_id,
                Entitlement.identifier == fact.entitlement_id,
                Entitlement.is_active.is_(True),
            )
            .values(is_active=False)
        )
        entitlement = Entitlement(
            app_id=tenant.app_id,
            app_user_id=app_user_id,
            identifier=fact.entitlement_id,
            product_id=fact.product_id,
            purchase_date=fact.purchase_time,
            expires_date=fact.expiry_time,
            is_active=True,
        )
        self.db.add(entitlement)

        try:
            await self.db.flush()
        except IntegrityError as e:
            logger.error(
                "Active row conflict for %s/%s product=%s entitlement=%s",
                tenant.app_id, app_user_id, fact.product_id, fact.entitlement_id,
            )
            raise InvariantViolationError(
                "Concurrent write left more than one active record",
                details={"product_id": fact.product_id, "entitlement_id": fact.entitlement_id},
            ) from e

        return subscription, entitlement

    async def deactivate_all(self, tenant: Tenant, app_user_id: str) -> tuple[int, int]:
        """
        Deactivate every active subscription and entitlement of a subscriber.

        Returns:
            (subscriptions deactivated, entitlements deactivated)
        """
        subscriptions = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.app_id == tenant.app_id,
                Subscription.app_user_id == app_user_id,
                Subscription.is_active.is_(True),
            )
            .values(is_active=False)
        )
        entitlements = await self.db.execute(
            update(Entitlement)
            .where(
                Entitlement.app_id == tenant.app_id,
                Entitlement.app_user_id == app_user_id,
                Entitlement.is_active.is_(True),
            )
            .values(is_active=False)
        )
        return subscriptions.rowcount, entitlements.rowcount

    def record_event(
        self,
        tenant: Tenant,
        event_type: str,
        app_user_id: Optional[str] = None,
        product_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Event:
        event = Event(
            app_id=tenant.app_id,
            type=event_type,
            app_user_id=app_user_id,
            product_id=product_id,
            amount_cents=amount_cents,
            currency=currency,
            payload=payload or {},
        )
        self.db.add(event)
        return event

    async def publish(self, tenant: Tenant, *app_user_ids: str) -> dict[str, dict[str, Any]]:
        """
        Commit, then project each subscriber and write the projection through
        to the cache.  Call while still holding the subscriber lock(s).
        """
        await self.db.commit()

        projector = CustomerInfoProjector(self.db)
        projections: dict[str, dict[str, Any]] = {}
        for app_user_id in app_user_ids:
            projection = await projector.project(tenant, app_user_id)
            await ProjectionCache.put(tenant, app_user_id, projection)
            projections[app_user_id] = projection
        return projections

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def reconcile(
        self,
        tenant: Tenant,
        claim: ReceiptClaim,
        result: VerificationResult,
    ) -> dict[str, Any]:
        """
        Apply a verification result for a receipt claim.

        A failure is recorded as a receipt row carrying the reason and
        raised as ``ReceiptValidationError``; nothing else changes.

        Returns:
            The subscriber's customer-info projection after the change.
        """
        app_user_id = claim.app_user_id

        async with self.locks.hold(subscriber_key(tenant.app_id, app_user_id)):
            await self.upsert_subscriber(tenant, app_user_id)

            if isinstance(result, VerificationFailure):
                self.db.add(
                    Receipt(
                        app_id=tenant.app_id,
                        app_user_id=app_user_id,
                        product_id=claim.product_id,
                        store=result.store,
                        transaction_id=claim.transaction_id,
                        raw={
                            **claim.audit_payload(),
                            "failure": {
                                "reason": result.reason.value,
                                "kind": result.kind.value,
                                "detail": result.detail,
                            },
                        },
                        status=result.reason.value,
                    )
                )
                await self.db.commit()
                logger.warning(
                    "Receipt rejected: app=%s user=%s product=%s reason=%s",
                    tenant.app_id, app_user_id, claim.product_id, result.reason.value,
                )
                raise ReceiptValidationError(
                    kind=result.kind.value,
                    reason=result.reason.value,
                    store=result.store,
                    detail=result.detail,
                )

            self.db.add(
                Receipt(
                    app_id=tenant.app_id,
                    app_user_id=app_user_id,
                    product_id=claim.product_id,
                    store=result.store,
                    transaction_id=result.transaction_id,
                    purchase_date=result.purchase_time,
                    raw={**claim.audit_payload(), "environment": result.environment},
                    status=ReceiptStatus.VALIDATED,
                )
            )
            await self.supersede(tenant, app_user_id, result)
            self.record_event(
                tenant,
                EventType.RECEIPT_VALIDATED,
                app_user_id=app_user_id,
                product_id=result.product_id,
                amount_cents=result.amount_cents,
                currency=result.currency,
                payload={
                    "store": result.store,
                    "transaction_id": result.transaction_id,
                    "environment": result.environment,
                    "entitlement_id": result.entitlement_id,
                },
            )
            projections = await self.publish(tenant, app_user_id)

        logger.info(
            "Receipt validated: app=%s user=%s product=%s store=%s env=%s",
            tenant.app_id, app_user_id, result.product_id, result.store, result.environment,
        )
        return projections[app_user_id]

    async def refresh(self, tenant: Tenant, app_user_id: str) -> dict[str, Any]:
        """Touch the subscriber (creating it if needed) and return a fresh projection."""
        async with self.locks.hold(subscriber_key(tenant.app_id, app_user_id)):
            await self.upsert_subscriber(tenant, app_user_id)
            projections = await self.publish(tenant, app_user_id)
        return projections[app_user_id]

    async def update_attributes(
        self,
        tenant: Tenant,
        app_user_id: str,
        attributes: dict[str, str],
    ) -> dict[str, Any]:
        """Merge attributes into the subscriber and log an attribution event."""
        async with self.locks.hold(subscriber_key(tenant.app_id, app_user_id)):
            await self.upsert_subscriber(tenant, app_user_id, attributes=attributes)
            self.record_event(
                tenant,
                EventType.ATTRIBUTION,
                app_user_id=app_user_id,
                payload={"attributes": attributes},
            )
            projections = await self.publish(tenant, app_user_id)
        return projections[app_user_id]

    async def identify(
        self,
        tenant: Tenant,
        app_user_id: str,
        new_app_user_id: str,
    ) -> tuple[dict[str, Any], bool]:
        """
        Merge ``app_user_id`` into ``new_app_user_id``.

        All subscription and entitlement rows of the old id are reparented to
        the new id.  Where both ids hold an active row for the same product
        (or entitlement identifier) the later purchase (or later expiry)
        stays active and the other is deactivated first.

        Returns:
            (projection of the new id, whether the new id was created)
        """
        async with self.locks.hold(
            subscriber_key(tenant.app_id, app_user_id),
            subscriber_key(tenant.app_id, new_app_user_id),
        ):
            await self.upsert_subscriber(tenant, app_user_id)
            _, created = await self.upsert_subscriber(tenant, new_app_user_id)

            if app_user_id != new_app_user_id:
                await self._resolve_active_conflicts(tenant, app_user_id, new_app_user_id)
                try:
                    moved_subscriptions = await self.db.execute(
                        update(Subscription)
                        .where(
                            Subscription.app_id == tenant.app_id,
                            Subscription.app_user_id == app_user_id,
                        )
                        .values(app_user_id=new_app_user_id)
                    )
                    moved_entitlements = await self.db.execute(
                        update(Entitlement)
                        .where(
                            Entitlement.app_id == tenant.app_id,
                            Entitlement.app_user_id == app_user_id,
                        )
                        .values(app_user_id=new_app_user_id)
                    )
                except IntegrityError as e:
                    logger.error(
                        "Active row conflict merging %s into %s (app=%s)",
                        app_user_id, new_app_user_id, tenant.app_id,
                    )
                    raise InvariantViolationError(
                        "Identity merge would leave more than one active record",
                        details={"app_user_id": app_user_id, "new_app_user_id": new_app_user_id},
                    ) from e

                self.record_event(
                    tenant,
                    EventType.IDENTIFY,
                    app_user_id=new_app_user_id,
                    payload={
                        "old_app_user_id": app_user_id,
                        "new_app_user_id": new_app_user_id,
                        "subscriptions_moved": moved_subscriptions.rowcount,
                        "entitlements_moved": moved_entitlements.rowcount,
                    },
                )
                logger.info(
                    "Merged %s into %s (app=%s): %s subscriptions, %s entitlements",
                    app_user_id, new_app_user_id, tenant.app_id,
                    moved_subscriptions.rowcount, moved_entitlements.rowcount,
                )

            projections = await self.publish(tenant, new_app_user_id, app_user_id)

        return projections[new_app_user_id], created

    async def _resolve_active_conflicts(
        self,
        tenant: Tenant,
        app_user_id: str,
        new_app_user_id: str,
    ) -> None:
        """Deactivate the losing side of every product/identifier active under both ids."""
        async def active(model, user_id):
            return (
                await self.db.scalars(
                    select(model).where(
                        model.app_id == tenant.app_id,
                        model.app_user_id == user_id,
                        model.is_active.is_(True),
                    )
                )
            ).all()

        new_subscriptions = {row.product_id: row for row in await active(Subscription, new_app_user_id)}
        for old_row in await active(Subscription, app_user_id):
            new_row = new_subscriptions.get(old_row.product_id)
            if new_row is None:
                continue
            loser = old_row if _subscription_rank(new_row) >= _subscription_rank(old_row) else new_row
            loser.is_active = False

        new_entitlements = {row.identifier: row for row in await active(Entitlement, new_app_user_id)}
        for old_row in await active(Entitlement, app_user_id):
            new_row = new_entitlements.get(old_row.identifier)
            if new_row is None:
                continue
            loser = old_row if _entitlement_rank(new_row) >= _entitlement_rank(old_row) else new_row
            loser.is_active = False

        await self.db.flush()


async def get_customer_info(
    tenant: Tenant,
    app_user_id: str,
    lazy_db: LazyDB,
) -> dict[str, Any]:
    """
    Cache-first customer info read.

    A hit opens no database session.  A miss touches the subscriber,
    projects from durable state and repopulates the cache.
    """
    cached = await ProjectionCache.get(tenant, app_user_id)
    if cached is not None:
        return cached

    db = await lazy_db.get()
    return await SubscriberService(db).refresh(tenant, app_user_id)
