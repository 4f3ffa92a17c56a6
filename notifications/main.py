"""Notifications service entry point."""

from __future__ import annotations

import asyncio
import logging
import signal

import structlog

from notifications.cached_resources import CachedResources
from notifications.client import KomunitinClient
from notifications.context import NotificationContext
from notifications.event_bus import EventBus
from notifications.mailer import Mailer
from notifications.repository import NotificationRepository
from notifications.worker import NotificationsWorker
from shared.cache import CacheService
from shared.config import Settings, get_settings
from shared.database import create_engine, create_session_factory
from shared.job_queue import JobQueue
from shared.redis import close_redis, create_redis

logger = structlog.get_logger()


def configure_logging(level: str = "info") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


async def serve(settings: Settings) -> None:
    redis_client = create_redis(settings.redis_url)
    engine = create_engine(settings)
    client = KomunitinClient(settings)
    cache = CacheService(redis_client)

    ctx = NotificationContext(
        settings=settings,
        bus=EventBus(),
        cache=cache,
        client=client,
        resources=CachedResources(cache, client, settings.resource_cache_ttl_seconds),
        repository=NotificationRepository(create_session_factory(engine)),
        synthetic_queue=JobQueue(
            redis_client, settings.synthetic_queue_name, lease_seconds=settings.job_lease_seconds
        ),
        push_queue=JobQueue(redis_client, settings.push_queue_name, lease_seconds=settings.job_lease_seconds),
        mailer=Mailer(settings),
    )
    worker = NotificationsWorker(ctx)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    try:
        await worker.start()
        await stop_requested.wait()
        logger.info("shutdown_requested")
    finally:
        await worker.stop()
        await client.aclose()
        await close_redis(redis_client)
        await engine.dispose()
        logger.info("notifications_service_stopped")


def run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    run()
