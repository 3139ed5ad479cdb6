"""
Customer Info
=============

Read model for a subscriber: the customer-info projection and its
Redis cache.

The projection is a pure function of durable state.  Rows are read in a
fixed order and one representative row is picked per product /
entitlement identifier, so the same state always projects to the same
document.  The cache holds the last projection written through after a
mutation; it is a read accelerator only and is never consulted for
writes.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, TypeVar, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from openrevenue.config import settings
from openrevenue.models.subscriber import Subscriber
from openrevenue.models.subscription import Entitlement, StoreEnvironment, Subscription
from openrevenue.services.cache import CacheKeys, CacheManager
from openrevenue.services.tenants import Tenant
from openrevenue.utils.helpers import ensure_utc, format_datetime, utc_now

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

RowT = TypeVar("RowT", Subscription, Entitlement)


def _representative(rows: Sequence[RowT]) -> RowT:
    """
    Pick the row shown for a key: the active one if any, else the most
    recent purchase (ties broken by creation time, then id).
    """
    active = [row for row in rows if row.is_active]
    pool = active or list(rows)
    return max(
        pool,
        key=lambda row: (
            ensure_utc(row.purchase_date) or _EPOCH,
            ensure_utc(row.created_at) or _EPOCH,
            str(_row_id(row)),
        ),
    )


def _row_id(row: Union[Subscription, Entitlement]) -> Any:
    if isinstance(row, Subscription):
        return row.subscription_id
    return row.entitlement_id


def _group(rows: Sequence[RowT], attr: str) -> dict[str, list[RowT]]:
    grouped: dict[str, list[RowT]] = {}
    for row in rows:
        grouped.setdefault(getattr(row, attr), []).append(row)
    return grouped


def render_subscription(row: Subscription) -> dict[str, Any]:
    return {
        "purchase_date": format_datetime(row.purchase_date),
        "expires_date": format_datetime(row.expires_date),
        "ownership_type": "PURCHASED",
        "store": row.store,
        "store_transaction_id": row.transaction_id,
        "is_sandbox": row.environment == StoreEnvironment.SANDBOX.value,
        "period_type": "normal",
        "unsubscribe_detected_at": None,
        "billing_issues_detected_at": None,
        "environment": row.environment,
        "is_active": bool(row.is_active),
    }


def render_entitlement(row: Entitlement) -> dict[str, Any]:
    return {
        "product_identifier": row.product_id,
        "purchase_date": format_datetime(row.purchase_date),
        "expires_date": format_datetime(row.expires_date),
        "grace_period_expires_date": None,
        "ownership_type": "PURCHASED",
        "is_active": bool(row.is_active),
    }


class CustomerInfoProjector:
    """Builds the customer-info document from durable state. Never writes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def project(
        self,
        tenant: Tenant,
        app_user_id: str,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        # populate_existing: rows already in the identity map may predate
        # bulk UPDATEs issued through this session
        subscriber = await self.db.scalar(
            select(Subscriber)
            .where(
                Subscriber.app_id == tenant.app_id,
                Subscriber.app_user_id == app_user_id,
            )
            .execution_options(populate_existing=True)
        )

        subscription_rows = (
            await self.db.scalars(
                select(Subscription)
                .where(
                    Subscription.app_id == tenant.app_id,
                    Subscription.app_user_id == app_user_id,
                )
                .order_by(
                    Subscription.product_id,
                    Subscription.purchase_date,
                    Subscription.created_at,
                    Subscription.subscription_id,
                )
                .execution_options(populate_existing=True)
            )
        ).all()

        entitlement_rows = (
            await self.db.scalars(
                select(Entitlement)
                .where(
                    Entitlement.app_id == tenant.app_id,
                    Entitlement.app_user_id == app_user_id,
                )
                .order_by(
                    Entitlement.identifier,
                    Entitlement.purchase_date,
                    Entitlement.created_at,
                    Entitlement.entitlement_id,
                )
                .execution_options(populate_existing=True)
            )
        ).all()

        subscriptions = {
            product_id: render_subscription(_representative(rows))
            for product_id, rows in sorted(_group(subscription_rows, "product_id").items())
        }
        entitlements = {
            identifier: render_entitlement(_representative(rows))
            for identifier, rows in sorted(_group(entitlement_rows, "identifier").items())
        }

        if subscriber is not None:
            first_seen = format_datetime(subscriber.first_seen)
            last_seen = format_datetime(subscriber.last_seen)
        else:
            # Unknown subscriber: report the request time, persist nothing
            first_seen = last_seen = format_datetime(now or utc_now())

        return {
            "original_app_user_id": app_user_id,
            "first_seen": first_seen,
            "last_seen": last_seen,
            "entitlements": entitlements,
            "subscriptions": subscriptions,
            "non_subscriptions": {},
            "management_url": None,
        }


# =============================================================================
# Projection Cache
# =============================================================================

_REQUIRED_KEYS = {
    "original_app_user_id": str,
    "first_seen": str,
    "last_seen": str,
    "entitlements": dict,
    "subscriptions": dict,
}


def _is_valid_projection(value: Any, app_user_id: str) -> bool:
    if not isinstance(value, dict):
        return False
    for key, expected in _REQUIRED_KEYS.items():
        if not isinstance(value.get(key), expected):
            return False
    return value["original_app_user_id"] == app_user_id


class ProjectionCache:
    """Customer-info cache keyed by tenant + subscriber."""

    @staticmethod
    async def get(tenant: Tenant, app_user_id: str) -> Optional[dict[str, Any]]:
        """Cached projection, or None on miss, expiry, Redis error or a corrupt entry."""
        value = await CacheManager.get(CacheKeys.customer_info(str(tenant.app_id), app_user_id))
        if value is None:
            return None
        if not _is_valid_projection(value, app_user_id):
            logger.warning(
                "Discarding malformed customer info cache entry for %s/%s",
                tenant.app_id, app_user_id,
            )
            return None
        return value

    @staticmethod
    async def put(
        tenant: Tenant,
        app_user_id: str,
        projection: dict[str, Any],
        ttl: Optional[int] = None,
    ) -> bool:
        return await CacheManager.set(
            CacheKeys.customer_info(str(tenant.app_id), app_user_id),
            projection,
            ttl=ttl or settings.CUSTOMER_INFO_CACHE_TTL_SECONDS,
        )

    @staticmethod
    async def invalidate(tenant: Tenant, app_user_id: str) -> bool:
        return await CacheManager.delete(CacheKeys.customer_info(str(tenant.app_id), app_user_id))
