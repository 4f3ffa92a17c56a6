"""Post expiration reminders.

A periodic scan looks at the posts of every active group that expire in the
next 7 days or have already expired:

- Posts about to expire get a notification 24 hours before expiry and, when
  they were published for more than 30 days, another one right away (7 days
  before expiry). Both jobs are kept after completion so later scans do not
  notify again.
- Expired posts are grouped by member. Each member with expired posts gets a
  reminder 7 days after the latest expiry, then 30 days after, then every 90
  days (30, 120, 210 ...).
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

import structlog

from notifications.context import NotificationContext
from notifications.events import EventName
from notifications.resources import Group, Post
from notifications.synthetic.shared import (
    DAY,
    JobKind,
    NotifyMemberHasExpiredPostsJob,
    NotifyPostExpiresSoonJob,
    PostExpirationCronJob,
    dispatch_synthetic_event,
    job_id,
    queue_job,
)
from shared.job_queue import Job

logger = structlog.get_logger()

POST_EXPIRATION_SCHEDULER = "scheduler-post-expirations-cron"

EXPIRING_WINDOW = 7 * DAY
# Only posts published for longer than this get the 7-days-before reminder
LONG_POST_WINDOW = 30 * DAY
KEEP_7D_JOB_SECONDS = 30 * DAY
KEEP_24H_JOB_SECONDS = 7 * DAY

_DATA_KEYS = {"offers": "offer", "needs": "need"}


def expired_posts_reminder_delay(since_expiry: float) -> float:
    """Seconds until the next reminder boundary, given seconds since the latest expiry."""
    if since_expiry < 7 * DAY:
        return 7 * DAY - since_expiry
    if since_expiry < 30 * DAY:
        return 30 * DAY - since_expiry
    k = math.ceil((since_expiry / DAY - 30) / 90)
    return (30 + 90 * k) * DAY - since_expiry


async def _schedule_expiring_post(ctx: NotificationContext, code: str, post: Post, now: datetime) -> None:
    time_left = (post.expires - now).total_seconds()
    window = (post.expires - post.created).total_seconds() if post.created else 0

    payload = NotifyPostExpiresSoonJob(
        code=code, post_type=post.type, post_id=post.id, member_id=post.member_id
    )
    if window > LONG_POST_WINDOW:
        await queue_job(
            ctx.synthetic_queue,
            job_id(JobKind.POST_EXPIRES_IN_7D, post.id),
            payload,
            keep_seconds=KEEP_7D_JOB_SECONDS,
        )
    await queue_job(
        ctx.synthetic_queue,
        job_id(JobKind.POST_EXPIRES_IN_24H, post.id),
        payload,
        delay=max(0, time_left - DAY),
        keep_seconds=KEEP_24H_JOB_SECONDS,
    )


async def _schedule_member_reminders(
    ctx: NotificationContext, code: str, latest: dict[str, datetime], now: datetime
) -> None:
    for member_id, expires in latest.items():
        delay = expired_posts_reminder_delay((now - expires).total_seconds())
        if delay >= 7 * DAY:
            continue
        await queue_job(
            ctx.synthetic_queue,
            job_id(JobKind.MEMBER_HAS_EXPIRED_POSTS, member_id),
            NotifyMemberHasExpiredPostsJob(code=code, member_id=member_id),
            replace=True,
            delay=delay,
        )


async def scan_group_posts(ctx: NotificationContext, group: Group) -> None:
    code = group.code
    now = ctx.now()
    params = {"filter[expire][lt]": (now + timedelta(seconds=EXPIRING_WINDOW)).isoformat()}

    offers = await ctx.client.get_offers(code, params)
    needs = await ctx.client.get_needs(code, params)

    # Most recent expiry per member
    latest: dict[str, datetime] = {}
    for post in [*offers, *needs]:
        if post.expires is None:
            continue
        member_id = post.member_id
        if member_id is None:
            logger.warning("post_without_member", code=code, post_id=post.id)
            continue

        if post.expires <= now:
            if member_id not in latest or post.expires > latest[member_id]:
                latest[member_id] = post.expires
        elif (post.expires - now).total_seconds() <= EXPIRING_WINDOW:
            await _schedule_expiring_post(ctx, code, post, now)

    await _schedule_member_reminders(ctx, code, latest, now)
    logger.debug("post_expiration_scan_done", code=code, posts=len(offers) + len(needs), members=len(latest))


async def handle_post_expiration_cron(ctx: NotificationContext, payload: PostExpirationCronJob, job: Job) -> None:
    logger.info("post_expiration_scan_started")
    for group in await ctx.resources.active_groups():
        try:
            await scan_group_posts(ctx, group)
        except Exception as e:
            logger.error("post_expiration_scan_failed", code=group.code, error=str(e))


async def handle_notify_post_expires_soon(
    ctx: NotificationContext, payload: NotifyPostExpiresSoonJob, job: Job
) -> None:
    await dispatch_synthetic_event(
        ctx,
        EventName.POST_EXPIRES_SOON,
        payload.code,
        {_DATA_KEYS[payload.post_type]: payload.post_id},
    )


async def handle_notify_member_has_expired_posts(
    ctx: NotificationContext, payload: NotifyMemberHasExpiredPostsJob, job: Job
) -> None:
    await dispatch_synthetic_event(
        ctx,
        EventName.MEMBER_HAS_EXPIRED_POSTS,
        payload.code,
        {"member": payload.member_id},
    )


JOB_HANDLERS = {
    "post-expiration-cron": handle_post_expiration_cron,
    "notify-post-expires-soon": handle_notify_post_expires_soon,
    "notify-member-has-expired-posts": handle_notify_member_has_expired_posts,
}
