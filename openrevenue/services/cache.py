"""
Redis Cache
===========

Connection lifecycle, JSON get/set helpers and key builders.

Nothing stored here is authoritative.  A missing key, an unreachable
Redis or an unparseable value all read as a miss; a failed write is
logged and reported as ``False``.
"""

import json
import logging
from typing import Any, Optional
from urllib.parse import quote

import redis.asyncio as redis
from redis.asyncio import Redis

from openrevenue.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Create the shared client and check it answers ``PING``."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    client = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
        socket_keepalive=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    _redis_client = client
    await client.ping()
    print("✅ Redis ready")
    return client


async def get_redis() -> Redis:
    if _redis_client is None:
        return await init_redis()
    return _redis_client


async def close_redis() -> None:
    global _redis_client

    client, _redis_client = _redis_client, None
    if client is not None:
        await client.aclose()
        print("✅ Redis client closed")


class CacheManager:
    """
    JSON values in Redis, failures logged and swallowed.

    Key layout:
        cache:customer_info:{app_id}:{app_user_id}   projection, 5 min
        cache:tenant:{sha256(api_key)}               tenant, 1 min
        webhook:event:{app_id}:{event_id}            applied marker, 7 days
    """

    DEFAULT_TTL = 300

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        """Decoded value, or None on a miss of any kind."""
        try:
            raw = await (await get_redis()).get(key)
            return None if raw is None else json.loads(raw)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None

    @staticmethod
    async def set(key: str, value: Any, ttl: int = DEFAULT_TTL) -> bool:
        try:
            await (await get_redis()).setex(key, ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, e)
            return False

    @staticmethod
    async def delete(key: str) -> bool:
        try:
            return await (await get_redis()).delete(key) > 0
        except Exception as e:
            logger.warning("Cache delete failed for %s: %s", key, e)
            return False

    @staticmethod
    async def exists(key: str) -> bool:
        """False when Redis cannot answer."""
        try:
            return await (await get_redis()).exists(key) > 0
        except Exception as e:
            logger.warning("Cache exists check failed for %s: %s", key, e)
            return False


# =============================================================================
# Cache Key Builders
# =============================================================================

class CacheKeys:
    """Cache key builders for consistent naming."""

    @staticmethod
    def customer_info(app_id: str, app_user_id: str) -> str:
        """
        Customer info projection for one subscriber.

        ``app_user_id`` is app-chosen and may contain ``:`` or spaces, so it
        is percent-encoded to keep keys of different tenants disjoint.
        """
        return f"cache:customer_info:{app_id}:{quote(app_user_id, safe='')}"

    @staticmethod
    def tenant(key_digest: str) -> str:
        """Resolved tenant for an API key (keyed by SHA-256 digest, never the raw key)."""
        return f"cache:tenant:{key_digest}"

    @staticmethod
    def webhook_event(app_id: str, event_id: str) -> str:
        """Marker for a webhook event id that has already been applied."""
        return f"webhook:event:{app_id}:{event_id}"
