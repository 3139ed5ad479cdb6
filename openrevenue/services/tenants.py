"""
Tenant Service
==============

API key to tenant resolution and tenant administration.

The resolved ``Tenant`` is a plain value passed explicitly into every
service call.  Resolution is cache-first: a hit costs one Redis GET and
no database session.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from openrevenue.config import settings
from openrevenue.core.errors import ConflictError, NotFoundError
from openrevenue.core.security import api_key_digest, generate_api_key
from openrevenue.utils.helpers import utc_now
from openrevenue.db.session import LazyDB
from openrevenue.models.app import App, AppKey
from openrevenue.services.cache import CacheKeys, CacheManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tenant:
    """A resolved tenant app."""
    app_id: uuid.UUID
    name: str

    def to_cache(self) -> dict[str, str]:
        return {"app_id": str(self.app_id), "name": self.name}

    @classmethod
    def from_cache(cls, data: object) -> Optional["Tenant"]:
        if not isinstance(data, dict):
            return None
        try:
            return cls(app_id=uuid.UUID(str(data["app_id"])), name=str(data["name"]))
        except (KeyError, ValueError):
            return None


class TenantService:
    """Tenant lookups and admin operations over the apps/app_keys tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_api_key(self, api_key: str) -> Optional[Tenant]:
        """Look up the tenant owning ``api_key`` (primary key or non-revoked extra key)."""
        result = await self.db.execute(
            select(App.app_id, App.name).where(App.api_key == api_key)
        )
        row = result.first()
        if row is None:
            result = await self.db.execute(
                select(App.app_id, App.name)
                .join(AppKey, AppKey.app_id == App.app_id)
                .where(AppKey.key == api_key, AppKey.revoked_at.is_(None))
            )
            row = result.first()

        if row is None:
            return None
        return Tenant(app_id=row.app_id, name=row.name)

    async def get_app(self, app_id: uuid.UUID) -> App:
        app = await self.db.get(App, app_id)
        if app is None:
            raise NotFoundError(message=f"App {app_id} not found")
        return app

    async def create_app(
        self,
        name: str,
        app_store_shared_secret: Optional[str] = None,
        app_store_bundle_id: Optional[str] = None,
        play_store_service_account_json: Optional[str] = None,
        play_store_package_name: Optional[str] = None,
    ) -> App:
        app = App(
            name=name,
            api_key=generate_api_key(),
            app_store_shared_secret=app_store_shared_secret,
            app_store_bundle_id=app_store_bundle_id,
            play_store_service_account_json=play_store_service_account_json,
            play_store_package_name=play_store_package_name,
        )
        self.db.add(app)
        await self.db.flush()
        logger.info("Created app %s (%s)", app.app_id, name)
        return app

    async def configure_stores(self, app_id: uuid.UUID, **fields: Optional[str]) -> App:
        """Set store credential fields. Only keys passed are touched."""
        app = await self.get_app(app_id)
        for name, value in fields.items():
            setattr(app, name, value)
        await self.db.flush()
        return app

    async def issue_key(self, app_id: uuid.UUID, label: Optional[str] = None) -> AppKey:
        await self.get_app(app_id)
        key = AppKey(app_id=app_id, key=generate_api_key(), label=label)
        self.db.add(key)
        await self.db.flush()
        return key

    async def revoke_key(self, app_id: uuid.UUID, key_id: uuid.UUID) -> AppKey:
        result = await self.db.execute(
            select(AppKey).where(AppKey.key_id == key_id, AppKey.app_id == app_id)
        )
        key = result.scalar_one_or_none()
        if key is None:
            raise NotFoundError(message=f"Key {key_id} not found")

        if key.revoked_at is not None:
            raise ConflictError(message=f"Key {key_id} is already revoked")

        key.revoked_at = utc_now()
        await self.db.commit()
        # Stop serving the key from cache immediately
        await CacheManager.delete(CacheKeys.tenant(api_key_digest(key.key)))
        logger.info("Revoked key %s of app %s", key_id, app_id)
        return key


async def resolve_tenant(api_key: str, lazy_db: LazyDB) -> Optional[Tenant]:
    """
    Resolve an API key, cache-first.

    Only hits are cached; an unknown key is looked up every time so a
    newly issued key works immediately.  A session opened for the lookup
    is released before returning, so nothing stays checked out while the
    request goes on to call a store.
    """
    cache_key = CacheKeys.tenant(api_key_digest(api_key))
    tenant = Tenant.from_cache(await CacheManager.get(cache_key))
    if tenant is not None:
        return tenant

    opened_here = not lazy_db.opened
    db = await lazy_db.get()
    try:
        tenant = await TenantService(db).find_by_api_key(api_key)
    finally:
        if opened_here:
            await lazy_db.close(commit=False)
    if tenant is not None:
        await CacheManager.set(cache_key, tenant.to_cache(), ttl=settings.TENANT_CACHE_TTL_SECONDS)
    return tenant
