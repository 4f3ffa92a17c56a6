"""Redis-backed memoization with local stampede protection.

Entries are stored as ``{"data": ..., "timestamp": ...}`` JSON documents.
Freshness is decided per call by the caller's logical TTL, while every
write uses a fixed physical TTL so keys for tenants that go quiet are
eventually evicted by Redis.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from typing import Any, Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

# Physical lifetime of any entry in Redis, regardless of the logical TTL
HARD_TTL_SECONDS = 7 * 24 * 60 * 60

TTL_NO_CACHE: float = 0
TTL_FOREVER: float = math.inf


class CacheService:
    """Cache over a Redis client.

    Concurrent ``get`` calls for the same key inside this process share a
    single fetch. Other processes may still fetch the same key in parallel.
    """

    def __init__(self, redis_client, clock: Callable[[], float] = time.time):
        self._redis = redis_client
        self._clock = clock
        self._pending: dict[str, asyncio.Future[Any]] = {}

    async def get(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl: float,
        force: bool = False,
    ) -> T:
        """Return the cached value for ``key`` or fetch and store it.

        Args:
            key: Cache key.
            fetcher: Coroutine function producing a JSON-serializable value.
            ttl: Logical time to live in seconds. ``TTL_NO_CACHE`` always
                fetches, ``TTL_FOREVER`` never expires logically.
            force: Skip the cached entry and refresh it.
        """
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        if not force:
            try:
                raw = await self._redis.get(key)
                if raw is not None:
                    entry = json.loads(raw)
                    if self._clock() - entry["timestamp"] < ttl:
                        logger.debug("cache_hit", key=key)
                        return entry["data"]
            except Exception as e:
                logger.warning("cache_get_error", key=key, error=str(e))

        # Another caller may have started the fetch while we were reading Redis
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._fetch(key, fetcher))
        self._pending[key] = task
        return await asyncio.shield(task)

    async def _fetch(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        try:
            logger.info("cache_miss", key=key)
            data = await fetcher()
            await self._save(key, data)
            return data
        finally:
            self._pending.pop(key, None)

    async def _save(self, key: str, data: Any) -> None:
        entry = {"data": data, "timestamp": self._clock()}
        try:
            await self._redis.set(key, json.dumps(entry), ex=HARD_TTL_SECONDS)
            logger.debug("cache_set", key=key)
        except Exception as e:
            logger.warning("cache_set_error", key=key, error=str(e))

    async def delete(self, key: str) -> None:
        """Drop a cached entry. Silently ignores Redis errors."""
        try:
            await self._redis.delete(key)
        except Exception as e:
            logger.warning("cache_delete_error", key=key, error=str(e))
