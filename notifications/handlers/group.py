"""Enrichment of group events."""

from __future__ import annotations

import asyncio

import structlog

from notifications.context import NotificationContext
from notifications.enriched_events import EnrichedGroupEvent, enrich
from notifications.events import NotificationEvent

logger = structlog.get_logger()


async def handle_group_event(ctx: NotificationContext, event: NotificationEvent) -> None:
    group = await ctx.client.get_group(event.code)
    admin_users = await asyncio.gather(
        *(ctx.client.get_user_with_settings(uid) for uid in group.admin_ids)
    )

    enriched = enrich(event, EnrichedGroupEvent, group=group, admin_users=list(admin_users))
    logger.info("group_event_enriched", event_id=event.id, code=event.code, admins=len(admin_users))
    await ctx.bus.emit(enriched)
