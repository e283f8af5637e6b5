"""Time-bound read cache for tenant lookups.

Two interchangeable backends behind the same ``get``/``set`` capability:
an in-process map (default) and Redis. A cache failure is never a request
failure: Redis errors log a warning and behave like a miss.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import redis.asyncio as aioredis

from cardrelay.config import Settings

logger = logging.getLogger(__name__)


class TTLCache(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: float) -> None: ...

    async def close(self) -> None: ...


class MemoryCache:
    """Process-local cache. Expired entries are evicted lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def close(self) -> None:
        self._entries.clear()


class NullCache:
    """Never stores anything."""

    async def get(self, key: str) -> Any | None:
        return None

    async def set(self, key: str, value: Any, ttl: float) -> None:
        return None

    async def close(self) -> None:
        return None


class RedisCache:
    """JSON values in Redis with native key expiry."""

    def __init__(self, redis: aioredis.Redis, prefix: str = "cardrelay:") -> None:
        self._redis = redis
        self._prefix = prefix

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(self._prefix + key)
            return json.loads(raw) if raw is not None else None
        except Exception:
            logger.warning("Redis cache get failed for key %s", key)
            return None

    async def set(self, key: str, value: Any, ttl: float) -> None:
        try:
            await self._redis.set(self._prefix + key, json.dumps(value), ex=max(1, int(ttl)))
        except Exception:
            logger.warning("Redis cache set failed for key %s", key)

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Redis disconnected")


async def build_cache(settings: Settings) -> TTLCache:
    """Connect to Redis when configured and reachable, else use memory."""
    if not settings.redis_url:
        logger.info("Read cache: in-process (ttl=%ss)", settings.cache_ttl_seconds)
        return MemoryCache()

    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await redis.ping()
    except Exception:
        logger.warning(
            "Redis unavailable at %s, falling back to in-process cache", settings.redis_url
        )
        await redis.aclose()
        return MemoryCache()

    logger.info("Read cache: Redis at %s", settings.redis_url)
    return RedisCache(redis)
