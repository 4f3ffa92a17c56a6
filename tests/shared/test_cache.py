"""Tests for the Redis-backed cache service."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from shared.cache import HARD_TTL_SECONDS, TTL_FOREVER, TTL_NO_CACHE, CacheService


def _entry(data, timestamp: float) -> str:
    return json.dumps({"data": data, "timestamp": timestamp})


class TestCacheGet:
    @pytest.mark.asyncio
    async def test_fresh_entry_is_returned_without_fetching(self, mock_redis):
        mock_redis.get.return_value = _entry({"name": "cached"}, 1000)
        cache = CacheService(mock_redis, clock=lambda: 1050)
        fetcher = AsyncMock()

        result = await cache.get("group:GRP0", fetcher, ttl=100)

        assert result == {"name": "cached"}
        fetcher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_entry_is_refetched_and_saved(self, mock_redis):
        mock_redis.get.return_value = _entry({"name": "old"}, 1000)
        cache = CacheService(mock_redis, clock=lambda: 1200)
        fetcher = AsyncMock(return_value={"name": "new"})

        result = await cache.get("group:GRP0", fetcher, ttl=100)

        assert result == {"name": "new"}
        mock_redis.set.assert_awaited_once()
        key, raw = mock_redis.set.await_args.args
        assert key == "group:GRP0"
        assert json.loads(raw) == {"data": {"name": "new"}, "timestamp": 1200}
        assert mock_redis.set.await_args.kwargs["ex"] == HARD_TTL_SECONDS

    @pytest.mark.asyncio
    async def test_no_cache_ttl_always_fetches(self, mock_redis):
        mock_redis.get.return_value = _entry("cached", 1000)
        cache = CacheService(mock_redis, clock=lambda: 1000)
        fetcher = AsyncMock(return_value="fresh")

        assert await cache.get("k", fetcher, ttl=TTL_NO_CACHE) == "fresh"

    @pytest.mark.asyncio
    async def test_forever_ttl_never_expires(self, mock_redis):
        mock_redis.get.return_value = _entry("cached", 0)
        cache = CacheService(mock_redis, clock=lambda: 10**9)
        fetcher = AsyncMock()

        assert await cache.get("k", fetcher, ttl=TTL_FOREVER) == "cached"
        fetcher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_skips_the_stored_entry(self, mock_redis):
        mock_redis.get.return_value = _entry("cached", 1000)
        cache = CacheService(mock_redis, clock=lambda: 1000)
        fetcher = AsyncMock(return_value="fresh")

        assert await cache.get("k", fetcher, ttl=TTL_FOREVER, force=True) == "fresh"
        mock_redis.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redis_read_error_falls_through_to_fetcher(self, mock_redis):
        mock_redis.get.side_effect = ConnectionError("redis down")
        cache = CacheService(mock_redis)
        fetcher = AsyncMock(return_value="fresh")

        assert await cache.get("k", fetcher, ttl=100) == "fresh"

    @pytest.mark.asyncio
    async def test_redis_write_error_still_returns_value(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("redis down")
        cache = CacheService(mock_redis)

        assert await cache.get("k", AsyncMock(return_value=[1, 2]), ttl=100) == [1, 2]


class TestStampede:
    @pytest.mark.asyncio
    async def test_concurrent_cold_gets_share_one_fetch(self, mock_redis):
        cache = CacheService(mock_redis)
        release = asyncio.Event()
        calls = 0

        async def fetcher():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"members": 3}

        first = asyncio.create_task(cache.get("group:GRP0:members", fetcher, ttl=100))
        second = asyncio.create_task(cache.get("group:GRP0:members", fetcher, ttl=100))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        release.set()

        assert await first == {"members": 3}
        assert await second == {"members": 3}
        assert calls == 1

    @pytest.mark.asyncio
    async def test_pending_marker_cleared_after_fetch_error(self, mock_redis):
        cache = CacheService(mock_redis)
        failing = AsyncMock(side_effect=RuntimeError("upstream down"))

        with pytest.raises(RuntimeError):
            await cache.get("k", failing, ttl=100)

        # A later call fetches again instead of reusing the failed one
        assert await cache.get("k", AsyncMock(return_value="ok"), ttl=100) == "ok"


class TestCacheDelete:
    @pytest.mark.asyncio
    async def test_delete_ignores_redis_errors(self, mock_redis):
        mock_redis.delete.side_effect = ConnectionError("redis down")
        cache = CacheService(mock_redis)

        await cache.delete("k")
