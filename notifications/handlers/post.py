"""Enrichment of offer and need events."""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from notifications.context import NotificationContext
from notifications.enriched_events import EnrichedPostEvent, enrich
from notifications.errors import EnrichmentError
from notifications.events import EventName, NotificationEvent, PostData
from notifications.resources import Post, UserWithSettings

logger = structlog.get_logger()

# Posts whose validity window (created to expires) is this short are urgent:
# their publication goes to the whole group right away instead of to digests.
POSTS_URGENT_DAYS = 7

# A post "expires soon" while its remaining time is inside this window
EXPIRES_SOON_WINDOW = timedelta(days=7)

PUBLISHED_EVENTS = {EventName.OFFER_PUBLISHED, EventName.NEED_PUBLISHED}


def is_post_urgent(post: Post) -> bool:
    if post.created is None or post.expires is None:
        return False
    return post.expires - post.created <= timedelta(days=POSTS_URGENT_DAYS)


def is_expiring_soon(post: Post, now: datetime) -> bool:
    if post.expires is None:
        return False
    return timedelta(0) < post.expires - now <= EXPIRES_SOON_WINDOW


async def handle_post_event(ctx: NotificationContext, event: NotificationEvent) -> None:
    data: PostData = event.data
    post_id = data.post_id
    if not post_id:
        raise EnrichmentError(f"Missing offer or need id in post event {event.name.value}")

    post, member = await ctx.client.get_post_with_member(event.code, data.post_type, post_id)

    # Reminders are scheduled ahead of time; the post may have been extended since
    if event.name == EventName.POST_EXPIRES_SOON and not is_expiring_soon(post, ctx.now()):
        logger.info("post_expires_soon_skipped", event_id=event.id, post_id=post.id, expires=str(post.expires))
        return

    group = await ctx.client.get_group(event.code)

    users: list[UserWithSettings]
    if event.name in PUBLISHED_EVENTS and is_post_urgent(post):
        members = await ctx.resources.group_members_with_users(event.code)
        by_id = {}
        for mwu in members:
            for uws in mwu.users:
                by_id[uws.user.id] = uws
        users = list(by_id.values())
    else:
        users = await ctx.client.get_member_users(member.id)

    enriched = enrich(event, EnrichedPostEvent, group=group, post=post, member=member, users=users)
    logger.debug("post_event_enriched", event_id=event.id, post_id=post.id, users=len(users))
    await ctx.bus.emit(enriched)
