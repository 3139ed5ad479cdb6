"""
Identity Merge Tests
====================

Tests for SubscriberService.identify:
- Rows follow the merged id
- Conflicting active rows resolve to the later purchase / later expiry
- Merging an id into itself changes nothing
"""

import pytest
from sqlalchemy import func, select

from openrevenue.models import Entitlement, Event, Subscriber, Subscription
from openrevenue.services.reconciler import SubscriberService

from factories import PURCHASE_MS, make_fact


ANON = "$anon:abc"
KNOWN = "user-42"


async def _buy(db, tenant, app_user_id, **fact_args):
    service = SubscriberService(db)
    await service.upsert_subscriber(tenant, app_user_id)
    await service.supersede(tenant, app_user_id, make_fact(**fact_args))
    await db.commit()


async def _active(db, model, app_user_id):
    return (
        await db.scalars(
            select(model).where(model.app_user_id == app_user_id, model.is_active.is_(True))
        )
    ).all()


class TestIdentify:
    """Tests for SubscriberService.identify"""

    @pytest.mark.asyncio
    async def test_rows_move_to_new_id(self, db_session, tenant):
        await _buy(db_session, tenant, ANON, product_id="pro_monthly")

        projection, created = await SubscriberService(db_session).identify(tenant, ANON, KNOWN)

        assert created is True
        assert projection["original_app_user_id"] == KNOWN
        assert projection["subscriptions"]["pro_monthly"]["is_active"] is True
        remaining = await db_session.scalar(
            select(func.count()).select_from(Subscription).where(Subscription.app_user_id == ANON)
        )
        assert remaining == 0
        assert len(await _active(db_session, Entitlement, KNOWN)) == 1

    @pytest.mark.asyncio
    async def test_both_subscribers_exist_after_merge(self, db_session, tenant):
        await SubscriberService(db_session).identify(tenant, ANON, KNOWN)

        ids = (
            await db_session.scalars(
                select(Subscriber.app_user_id).where(Subscriber.app_id == tenant.app_id)
            )
        ).all()
        assert sorted(ids) == sorted([ANON, KNOWN])

    @pytest.mark.asyncio
    async def test_existing_target_is_not_created(self, db_session, tenant):
        service = SubscriberService(db_session)
        await service.upsert_subscriber(tenant, KNOWN)
        await db_session.commit()

        _, created = await service.identify(tenant, ANON, KNOWN)

        assert created is False

    @pytest.mark.asyncio
    async def test_later_purchase_wins_subscription_conflict(self, db_session, tenant):
        await _buy(db_session, tenant, KNOWN, transaction_id="known-earlier", purchase_ms=PURCHASE_MS)
        await _buy(db_session, tenant, ANON, transaction_id="anon-later", purchase_ms=PURCHASE_MS + 5000)

        await SubscriberService(db_session).identify(tenant, ANON, KNOWN)

        active = await _active(db_session, Subscription, KNOWN)
        assert [row.transaction_id for row in active] == ["anon-later"]
        total = await db_session.scalar(
            select(func.count()).select_from(Subscription).where(Subscription.app_user_id == KNOWN)
        )
        assert total == 2

    @pytest.mark.asyncio
    async def test_target_keeps_later_purchase(self, db_session, tenant):
        await _buy(db_session, tenant, ANON, transaction_id="anon-earlier", purchase_ms=PURCHASE_MS)
        await _buy(db_session, tenant, KNOWN, transaction_id="known-later", purchase_ms=PURCHASE_MS + 5000)

        await SubscriberService(db_session).identify(tenant, ANON, KNOWN)

        active = await _active(db_session, Subscription, KNOWN)
        assert [row.transaction_id for row in active] == ["known-later"]

    @pytest.mark.asyncio
    async def test_non_expiring_entitlement_wins(self, db_session, tenant):
        await _buy(db_session, tenant, KNOWN, product_id="pro_monthly", entitlement_id="pro")
        await _buy(
            db_session, tenant, ANON,
            product_id="pro_lifetime", entitlement_id="pro", expires_ms=None,
        )

        projection, _ = await SubscriberService(db_session).identify(tenant, ANON, KNOWN)

        active = await _active(db_session, Entitlement, KNOWN)
        assert len(active) == 1
        assert active[0].product_id == "pro_lifetime"
        assert active[0].expires_date is None
        assert projection["entitlements"]["pro"]["product_identifier"] == "pro_lifetime"
        # Different products, so both subscriptions stay active
        assert len(await _active(db_session, Subscription, KNOWN)) == 2

    @pytest.mark.asyncio
    async def test_same_id_is_a_no_op(self, db_session, tenant):
        await _buy(db_session, tenant, KNOWN)

        projection, created = await SubscriberService(db_session).identify(tenant, KNOWN, KNOWN)

        assert created is False
        assert projection["subscriptions"]["pro_monthly"]["is_active"] is True
        assert await db_session.scalar(select(func.count()).select_from(Event)) == 0

    @pytest.mark.asyncio
    async def test_merge_is_logged(self, db_session, tenant):
        await _buy(db_session, tenant, ANON)

        await SubscriberService(db_session).identify(tenant, ANON, KNOWN)

        event = await db_session.scalar(select(Event).where(Event.type == "identify"))
        assert event.app_user_id == KNOWN
        assert event.payload["old_app_user_id"] == ANON
        assert event.payload["subscriptions_moved"] == 1

    @pytest.mark.asyncio
    async def test_old_id_projection_is_emptied(self, db_session, tenant):
        from openrevenue.services.customer_info import ProjectionCache

        await _buy(db_session, tenant, ANON)
        await SubscriberService(db_session).refresh(tenant, ANON)

        await SubscriberService(db_session).identify(tenant, ANON, KNOWN)

        cached = await ProjectionCache.get(tenant, ANON)
        assert cached["subscriptions"] == {}
