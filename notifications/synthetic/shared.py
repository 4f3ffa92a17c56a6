"""Pieces shared by the synthetic event modules.

Every job on the synthetic queue carries one of the payload models below,
tagged by the job name. ``decode_job`` turns a stored job into its payload so
handlers receive validated data only.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from notifications.context import NotificationContext
from notifications.events import (
    EventName,
    NotificationEvent,
    decode_event_data,
    synthetic_event_fields,
)
from notifications.handlers import dispatch_event
from shared.job_queue import Job, JobQueue

logger = structlog.get_logger()

DAY = 24 * 60 * 60
WEEK = 7 * DAY


class JobKind(str, Enum):
    """Kinds of entity-scoped jobs. Each entity has at most one job per kind."""

    STILL_PENDING = "still-pending"
    POST_EXPIRES_IN_7D = "post-expires-in-7d"
    POST_EXPIRES_IN_24H = "post-expires-in-24h"
    MEMBER_HAS_EXPIRED_POSTS = "member-has-expired-posts"


def job_id(kind: JobKind, entity_id: str) -> str:
    return f"{kind.value}:{entity_id}"


# ---------------------------------------------------------------------------
# Job payloads
# ---------------------------------------------------------------------------


class _JobPayload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class TransferStillPendingJob(_JobPayload):
    name: Literal["transfer-still-pending"] = "transfer-still-pending"
    code: str
    transfer: str
    payer: str
    payee: str
    user: str = ""
    iteration: int = 1


class PostExpirationCronJob(_JobPayload):
    name: Literal["post-expiration-cron"] = "post-expiration-cron"


class NotifyPostExpiresSoonJob(_JobPayload):
    name: Literal["notify-post-expires-soon"] = "notify-post-expires-soon"
    code: str
    post_type: Literal["offers", "needs"]
    post_id: str
    member_id: str


class NotifyMemberHasExpiredPostsJob(_JobPayload):
    name: Literal["notify-member-has-expired-posts"] = "notify-member-has-expired-posts"
    code: str
    member_id: str


class GroupDigestCronJob(_JobPayload):
    name: Literal["group-digest-cron"] = "group-digest-cron"


class EngagementCronJob(_JobPayload):
    name: Literal["engagement-events-cron-job"] = "engagement-events-cron-job"


JobPayload = Annotated[
    Union[
        TransferStillPendingJob,
        PostExpirationCronJob,
        NotifyPostExpiresSoonJob,
        NotifyMemberHasExpiredPostsJob,
        GroupDigestCronJob,
        EngagementCronJob,
    ],
    Field(discriminator="name"),
]

_job_payload = TypeAdapter(JobPayload)

JOB_NAMES: frozenset[str] = frozenset(
    model.model_fields["name"].default
    for model in (
        TransferStillPendingJob,
        PostExpirationCronJob,
        NotifyPostExpiresSoonJob,
        NotifyMemberHasExpiredPostsJob,
        GroupDigestCronJob,
        EngagementCronJob,
    )
)


def decode_job(job: Job) -> JobPayload:
    """Validate the stored data of ``job`` against the payload model of its name.

    Raises:
        pydantic.ValidationError: On an unknown job name or a malformed payload.
    """
    return _job_payload.validate_python({**job.data, "name": job.name})


async def queue_job(
    queue: JobQueue,
    job_id: str,
    payload: _JobPayload,
    *,
    replace: bool = False,
    delay: float = 0,
    keep_seconds: int = 0,
) -> Job:
    """Add-or-replace a job under a deterministic id.

    Without ``replace`` an existing job with the same id (pending or retained
    after completion) is returned untouched.
    """
    if replace and await queue.remove(job_id):
        logger.debug("synthetic_job_replaced", job_id=job_id)
    return await queue.add(
        payload.name,
        payload.model_dump(mode="json", exclude={"name"}),
        job_id=job_id,
        delay=delay,
        keep_seconds=keep_seconds,
    )


async def reschedule_job(queue: JobQueue, job: Job, payload: _JobPayload, *, delay: float) -> Job | None:
    """Turn the claimed ``job`` into its next run with ``payload``.

    Returns None, writing nothing, when the job was cancelled or replaced
    after it was claimed.
    """
    following = await queue.reschedule(job, payload.model_dump(mode="json", exclude={"name"}), delay)
    if following is not None:
        logger.debug("synthetic_job_rescheduled", job_id=job.id, delay=delay)
    return following


async def cancel_job(
queue: JobQueue, job_id: str) -> bool:
    """Remove the job stored under ``job_id``. A missing job is not an error."""
    job = await queue.get_job(job_id)
    if job is None:
        return False
    logger.debug("synthetic_job_cancelled", job_id=job_id)
    return await job.remove()


# ---------------------------------------------------------------------------
# Dispatching synthetic events
# ---------------------------------------------------------------------------


async def dispatch_synthetic_event(
    ctx: NotificationContext,
    name: EventName,
    code: str,
    data: dict[str, Any],
    user: str = "",
) -> None:
    """Run a generated event through the same handler path as stream events."""
    event = NotificationEvent(
        **synthetic_event_fields(name, code, user),
        data=decode_event_data(name, data),
    )
    logger.debug("synthetic_event_dispatched", event_id=event.id, event_name=name.value, code=code)
    await dispatch_event(ctx, event)


async def dispatch_synthetic_enriched_event(
    ctx: NotificationContext,
    model: type[NotificationEvent],
    name: EventName,
    code: str,
    data: dict[str, Any],
    **entities,
) -> None:
    """Emit a generated event whose entities are already resolved."""
    event = model(
        **synthetic_event_fields(name, code),
        data=decode_event_data(name, data),
        **entities,
    )
    logger.debug("synthetic_enriched_event_emitted", event_id=event.id, event_name=name.value, code=code)
    await ctx.bus.emit(event)
