"""Synthetic events: notifications generated by this service rather than received.

All modules share the synthetic job queue. Job names map to handlers through
one table that must cover every job payload model.
"""

from __future__ import annotations

from typing import Awaitable, Callable

import structlog

from notifications.context import NotificationContext
from notifications.synthetic import digest, engagement, post, transfer
from notifications.synthetic.shared import (
    JOB_NAMES,
    EngagementCronJob,
    GroupDigestCronJob,
    PostExpirationCronJob,
    decode_job,
)
from shared.job_queue import Job, JobWorker

logger = structlog.get_logger()

# (scheduler id, settings field holding the cron pattern, job payload)
CRON_SCHEDULERS = (
    (post.POST_EXPIRATION_SCHEDULER, "post_expiration_cron", PostExpirationCronJob()),
    (digest.DIGEST_SCHEDULER, "digest_cron", GroupDigestCronJob()),
    (engagement.ENGAGEMENT_SCHEDULER, "engagement_cron", EngagementCronJob()),
)

JOB_HANDLERS = {
    **transfer.JOB_HANDLERS,
    **post.JOB_HANDLERS,
    **digest.JOB_HANDLERS,
    **engagement.JOB_HANDLERS,
}

_missing = JOB_NAMES - JOB_HANDLERS.keys()
if _missing:
    raise RuntimeError(f"No synthetic job handler for: {sorted(_missing)}")


async def process_synthetic_job(ctx: NotificationContext, job: Job) -> None:
    """Decode a claimed job and run its handler with the payload and the job itself."""
    payload = decode_job(job)
    await JOB_HANDLERS[payload.name](ctx, payload, job)


async def init_synthetic_events(ctx: NotificationContext) -> Callable[[], Awaitable[None]]:
    """Register the cron schedulers, subscribe to the bus and start the queue worker.

    Returns a coroutine function that undoes all of it.
    """
    queue = ctx.synthetic_queue
    for scheduler_id, setting, payload in CRON_SCHEDULERS:
        await queue.upsert_job_scheduler(scheduler_id, getattr(ctx.settings, setting), payload.name)

    unsubscribers = transfer.subscribe_transfer_events(ctx)

    async def processor(job: Job) -> None:
        await process_synthetic_job(ctx, job)

    worker = JobWorker(queue, processor, poll_interval=ctx.settings.job_poll_interval_seconds)
    worker.start()
    logger.info("synthetic_events_initialized", jobs=sorted(JOB_HANDLERS))

    async def stop() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()
        for scheduler_id, _, _ in CRON_SCHEDULERS:
            await queue.remove_job_scheduler(scheduler_id)
        await worker.close()

    return stop
