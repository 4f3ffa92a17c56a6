"""Daily engagement nudges.

Members with a non-positive balance and no offers are encouraged to publish
an offer; members with a positive balance and no needs, a need. A user gets
the nudge at most once every 3 months, and never if anything else was sent to
them in the last 7 days.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from notifications.context import NotificationContext
from notifications.enriched_events import EnrichedMemberHasNoPostsEvent
from notifications.events import EventName
from notifications.resources import Group, MemberWithUsers
from notifications.synthetic.shared import EngagementCronJob, dispatch_synthetic_enriched_event
from shared.job_queue import Job

logger = structlog.get_logger()

ENGAGEMENT_SCHEDULER = "engagement-events-cron"

ENGAGEMENT_COOLDOWN = timedelta(days=90)
SILENCE_REQUIRED = timedelta(days=7)


def can_send_engagement(
    last_engagement: datetime | None, last_notification: datetime | None, now: datetime
) -> bool:
    if last_engagement is not None and last_engagement > now - ENGAGEMENT_COOLDOWN:
        return False
    if last_notification is not None and last_notification > now - SILENCE_REQUIRED:
        return False
    return True


async def _process_member(
    ctx: NotificationContext,
    group: Group,
    mwu: MemberWithUsers,
    last_engagement: dict[str, datetime],
    last_any: dict[str, datetime],
    now: datetime,
) -> bool:
    member = mwu.member
    code = group.code

    # Cached counters are enough to rule most members out
    if member.needs_count != 0 and member.offers_count != 0:
        return False

    candidates = [
        uws
        for uws in mwu.users
        if can_send_engagement(last_engagement.get(uws.user.id), last_any.get(uws.user.id), now)
    ]
    if not candidates or member.account_id is None:
        return False

    account = await ctx.client.get_account(code, member.account_id)
    balance = account.balance
    if (balance > 0 and member.needs_count > 0) or (balance <= 0 and member.offers_count > 0):
        return False

    fresh = await ctx.client.get_member(code, member.id)
    send_no_offers = balance <= 0 and fresh.offers_count == 0
    send_no_needs = balance > 0 and fresh.needs_count == 0
    if not (send_no_offers or send_no_needs):
        return False

    currency = await ctx.resources.currency(code)
    await dispatch_synthetic_enriched_event(
        ctx,
        EnrichedMemberHasNoPostsEvent,
        EventName.MEMBER_HAS_NO_POSTS,
        code,
        {"balance": balance, "type": "offers" if send_no_offers else "needs"},
        group=group,
        member=fresh,
        currency=currency,
        users=candidates,
    )
    return True


async def process_group_engagement(ctx: NotificationContext, group: Group) -> None:
    code = group.code
    now = ctx.now()
    members = await ctx.resources.group_members_with_users(code)
    last_engagement = await ctx.repository.last_notification_by_user(
        code, EventName.MEMBER_HAS_NO_POSTS.value
    )
    last_any = await ctx.repository.last_notification_by_user(code)

    sent = 0
    for mwu in members:
        if await _process_member(ctx, group, mwu, last_engagement, last_any, now):
            sent += 1

    logger.info("group_engagement_processed", code=code, members=len(members), nudges_sent=sent)


async def handle_engagement_cron(ctx: NotificationContext, payload: EngagementCronJob, job: Job) -> None:
    logger.info("engagement_cron_started")
    for group in await ctx.resources.active_groups():
        try:
            await process_group_engagement(ctx, group)
        except Exception as e:
            logger.error("group_engagement_failed", code=group.code, error=str(e))


JOB_HANDLERS = {
    "engagement-events-cron-job": handle_engagement_cron,
}
