"""Enrichment of member events."""

from __future__ import annotations

import asyncio

import structlog

from notifications.context import NotificationContext
from notifications.enriched_events import (
    EnrichedMemberEvent,
    EnrichedMemberHasExpiredPostsEvent,
    EnrichedMemberRequestedEvent,
    enrich,
)
from notifications.events import EventName, MemberData, NotificationEvent

logger = structlog.get_logger()


async def handle_member_event(ctx: NotificationContext, event: NotificationEvent) -> None:
    data: MemberData = event.data
    client = ctx.client

    member, users, group = await asyncio.gather(
        client.get_member(event.code, data.member),
        client.get_member_users(data.member),
        client.get_group(event.code),
    )
    entities = {"group": group, "member": member, "users": users}

    if event.name == EventName.MEMBER_REQUESTED:
        admin_users = await asyncio.gather(*(client.get_user_with_settings(uid) for uid in group.admin_ids))
        enriched = enrich(event, EnrichedMemberRequestedEvent, admin_users=list(admin_users), **entities)

    elif event.name == EventName.MEMBER_HAS_EXPIRED_POSTS:
        expired = {"filter[member]": data.member, "filter[expired]": "true"}
        expired_offers, expired_needs = await asyncio.gather(
            client.get_offers(event.code, expired),
            client.get_needs(event.code, expired),
        )
        enriched = enrich(
            event,
            EnrichedMemberHasExpiredPostsEvent,
            expired_offers=expired_offers,
            expired_needs=expired_needs,
            **entities,
        )

    else:
        enriched = enrich(event, EnrichedMemberEvent, **entities)

    logger.debug("member_event_enriched", event_id=event.id, member_id=data.member)
    await ctx.bus.emit(enriched)
