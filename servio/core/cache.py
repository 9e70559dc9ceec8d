"""
Redis-backed read-through cache for booking views.

Caching is optional: with no REDIS_URL configured every call is a no-op and
reads fall through to the database. Redis failures are logged and swallowed
so the cache can never fail a request.
"""
import json
from typing import Any, Dict, Optional

import redis.asyncio as redis
import structlog

from servio.config import settings

logger = structlog.get_logger(__name__)


def booking_key(booking_id: int) -> str:
    return f"booking:{booking_id}"


class BookingCache:
    def __init__(self, client: Optional[Any] = None, ttl_seconds: Optional[int] = None):
        self.client = client
        self.ttl = ttl_seconds or settings.BOOKING_CACHE_TTL_SECONDS

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def get(self, booking_id: int, version: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Cached view, or ``None``. With ``version`` a view of any other
        version is treated as a miss, so a view written back by a request
        that raced a commit is never served."""
        if not self.enabled:
            return None
        try:
            raw = await self.client.get(booking_key(booking_id))
        except Exception as e:
            logger.warning("booking_cache_get_failed", booking_id=booking_id, error=str(e))
            return None
        if raw is None:
            return None
        view = json.loads(raw)
        if version is not None and view.get("version") != version:
            logger.info("booking_cache_stale", booking_id=booking_id, cached=view.get("version"), current=version)
            return None
        return view

    async def set(self, booking_id: int, view: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            await self.client.setex(booking_key(booking_id), self.ttl, json.dumps(view, default=str))
        except Exception as e:
            logger.warning("booking_cache_set_failed", booking_id=booking_id, error=str(e))

    async def invalidate(self, booking_id: int) -> None:
        if not self.enabled:
            return
        try:
            await self.client.delete(booking_key(booking_id))
            logger.debug("booking_cache_invalidated", booking_id=booking_id)
        except Exception as e:
            logger.warning("booking_cache_invalidate_failed", booking_id=booking_id, error=str(e))


class RedisManager:
    """Owns the process-wide Redis connection, opened on app startup."""

    def __init__(self):
        self.redis_client = None

    async def connect(self) -> None:
        if not settings.REDIS_URL:
            logger.info("redis_disabled")
            return
        try:
            client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await client.ping()
            self.redis_client = client
            logger.info("redis_connected")
        except Exception as e:
            logger.warning("redis_connect_failed", error=str(e))
            self.redis_client = None

    async def close(self) -> None:
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None
            logger.info("redis_closed")

    def booking_cache(self) -> BookingCache:
        return BookingCache(self.redis_client)


redis_manager = RedisManager()
