"""Reminders for transfers waiting for the payer's approval.

A pending transfer gets a "still pending" reminder after one day, then daily
up to the third one and weekly after that, until it is committed or rejected.
"""

from __future__ import annotations

from typing import Callable

import structlog

from notifications.context import NotificationContext
from notifications.events import EventName, TransferData
from notifications.synthetic.shared import (
    DAY,
    WEEK,
    JobKind,
    TransferStillPendingJob,
    cancel_job,
    dispatch_synthetic_event,
    job_id,
    queue_job,
    reschedule_job,
)
from shared.job_queue import Job

logger = structlog.get_logger()

DAILY_REMINDERS = 3


def still_pending_delay(iteration: int) -> int:
    """Delay before reminder number ``iteration`` (1-based)."""
    return DAY if iteration <= DAILY_REMINDERS else WEEK


async def handle_still_pending_job(ctx: NotificationContext, payload: TransferStillPendingJob, job: Job) -> None:
    logger.debug("transfer_still_pending_job", transfer_id=payload.transfer, iteration=payload.iteration)

    # The next reminder is in place before this one is sent. A commit or
    # reject since the claim removed the job, and then nothing is sent.
    next_iteration = payload.iteration + 1
    following = await reschedule_job(
        ctx.synthetic_queue,
        job,
        payload.model_copy(update={"iteration": next_iteration}),
        delay=still_pending_delay(next_iteration),
    )
    if following is None:
        logger.info("transfer_still_pending_cancelled", transfer_id=payload.transfer)
        return

    await dispatch_synthetic_event(
        ctx,
        EventName.TRANSFER_STILL_PENDING,
        payload.code,
        {"transfer": payload.transfer, "payer": payload.payer, "payee": payload.payee},
        user=payload.user,
    )


def subscribe_transfer_events(ctx: NotificationContext) -> list[Callable[[], None]]:
    async def on_pending(event) -> None:
        data: TransferData = event.data
        logger.debug("transfer_still_pending_scheduled", transfer_id=data.transfer)
        await queue_job(
            ctx.synthetic_queue,
            job_id(JobKind.STILL_PENDING, data.transfer),
            TransferStillPendingJob(
                code=event.code,
                transfer=data.transfer,
                payer=data.payer,
                payee=data.payee,
                user=event.user,
                iteration=1,
            ),
            replace=True,
            delay=still_pending_delay(1),
        )

    async def on_settled(event) -> None:
        data: TransferData = event.data
        await cancel_job(ctx.synthetic_queue, job_id(JobKind.STILL_PENDING, data.transfer))

    return [
        ctx.bus.on(EventName.TRANSFER_PENDING, on_pending),
        ctx.bus.on(EventName.TRANSFER_COMMITTED, on_settled),
        ctx.bus.on(EventName.TRANSFER_REJECTED, on_settled),
    ]


JOB_HANDLERS = {
    "transfer-still-pending": handle_still_pending_job,
}
