"""Periodic digests of new posts and new members.

Every run looks back 14 days in each active group and decides, per user,
whether to send a PostsPublishedDigest or a MembersJoinedDigest. Eligibility
is read from the in-app notifications already stored for the user, so no
scheduler state is needed between runs.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog

from notifications.context import NotificationContext
from notifications.enriched_events import EnrichedDigestEvent
from notifications.events import EventName
from notifications.handlers.post import is_post_urgent
from notifications.resources import Group, Member, Post, User, UserWithSettings
from notifications.synthetic.shared import GroupDigestCronJob, dispatch_synthetic_enriched_event
from shared.job_queue import Job

logger = structlog.get_logger()

DIGEST_SCHEDULER = "digest-cron-scheduler"

MIN_ITEMS_FAST = 3
MIN_SILENCE_FAST = timedelta(days=2)
MIN_SILENCE_SLOW = timedelta(days=7)
LOOKBACK = timedelta(days=14)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def can_send_digest(count: int, last_sent: datetime | None, now: datetime) -> bool:
    """3+ items after 2 days of silence, or 1+ items after 7 days."""
    if count == 0:
        return False
    silence = now - (last_sent or EPOCH)
    if count >= MIN_ITEMS_FAST and silence >= MIN_SILENCE_FAST:
        return True
    return silence >= MIN_SILENCE_SLOW


def _is_new(created: datetime | None, last_sent: datetime | None) -> bool:
    if last_sent is None:
        return True
    return created is not None and created > last_sent


def _latest(*dates: datetime | None) -> datetime | None:
    present = [d for d in dates if d is not None]
    return max(present) if present else None


def _owns(user: User, member_id: str | None) -> bool:
    return member_id is not None and user.belongs_to(member_id)


def _split(posts: list[Post]) -> dict[str, list[Post]]:
    return {
        "offers": [p for p in posts if p.type == "offers"],
        "needs": [p for p in posts if p.type == "needs"],
    }


async def process_group_digest(ctx: NotificationContext, group: Group) -> None:
    code = group.code
    now = ctx.now()
    since = {"filter[created][gt]": (now - LOOKBACK).isoformat()}

    offers = await ctx.client.get_offers(code, since)
    needs = await ctx.client.get_needs(code, since)
    new_members = await ctx.client.get_members(code, since)

    # Urgent posts were already announced to everyone when published
    posts = [p for p in [*offers, *needs] if not is_post_urgent(p)]
    if not posts and not new_members:
        logger.debug("digest_nothing_new", code=code)
        return

    members_with_users = await ctx.resources.group_members_with_users(code)
    users: dict[str, UserWithSettings] = {}
    for mwu in members_with_users:
        for uws in mwu.users:
            users.setdefault(uws.user.id, uws)

    last_posts_map = await ctx.repository.last_notification_by_user(
        code, EventName.POSTS_PUBLISHED_DIGEST.value
    )
    last_members_map = await ctx.repository.last_notification_by_user(
        code, EventName.MEMBERS_JOINED_DIGEST.value
    )
    new_member_ids = {m.id for m in new_members}

    sent = 0
    for uws in users.values():
        user = uws.user
        last_posts = last_posts_map.get(user.id)
        last_members = last_members_map.get(user.id)
        last_any = _latest(last_posts, last_members)

        eligible_members = [
            m for m in new_members if not _owns(user, m.id) and _is_new(m.created, last_members)
        ]

        regular_posts: list[Post] = []
        new_member_posts: list[Post] = []
        for post in posts:
            if _owns(user, post.member_id):
                continue
            if post.member_id in new_member_ids:
                if _is_new(post.created, last_members):
                    new_member_posts.append(post)
            elif _is_new(post.created, last_posts):
                regular_posts.append(post)

        posts_eligible = can_send_digest(len(regular_posts), last_any, now)
        members_eligible = can_send_digest(len(eligible_members), last_any, now)

        # When both are due, send the one that waited longer; members win ties
        send_members = members_eligible and (
            not posts_eligible or (last_members or EPOCH) <= (last_posts or EPOCH)
        )

        if send_members:
            await dispatch_synthetic_enriched_event(
                ctx,
                EnrichedDigestEvent,
                EventName.MEMBERS_JOINED_DIGEST,
                code,
                {},
                group=group,
                members=eligible_members,
                users=[uws],
                **_split(new_member_posts),
            )
            sent += 1
        elif posts_eligible:
            author_ids = {p.member_id for p in regular_posts}
            authors: list[Member] = [
                mwu.member for mwu in members_with_users if mwu.member.id in author_ids
            ]
            await dispatch_synthetic_enriched_event(
                ctx,
                EnrichedDigestEvent,
                EventName.POSTS_PUBLISHED_DIGEST,
                code,
                {},
                group=group,
                members=authors,
                users=[uws],
                **_split(regular_posts),
            )
            sent += 1

    logger.info("group_digest_processed", code=code, users=len(users), digests_sent=sent)


async def handle_digest_cron(ctx: NotificationContext, payload: GroupDigestCronJob, job: Job) -> None:
    logger.info("digest_cron_started")
    for group in await ctx.resources.active_groups():
        try:
            await process_group_digest(ctx, group)
        except Exception as e:
            logger.error("group_digest_failed", code=group.code, error=str(e))


JOB_HANDLERS = {
    "group-digest-cron": handle_digest_cron,
}
