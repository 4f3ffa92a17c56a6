"""Redis connection helpers."""

from __future__ import annotations

import redis.asyncio as redis

from shared.config import get_settings


def create_redis(redis_url: str | None = None) -> redis.Redis:
    """Create a Redis client with string responses.

    The event stream consumer opens its own client through this helper
    because its blocking reads hold a connection for as long as they wait.
    """
    return redis.from_url(
        redis_url or get_settings().redis_url,
        encoding="utf-8",
        decode_responses=True,
    )


async def close_redis(client: redis.Redis | None) -> None:
    """Close a Redis client, ignoring ``None``."""
    if client is not None:
        await client.aclose()
