"""Enrichment of account e-mail events (validation, password reset).

The enriched event carries a one-time auth code so the e-mail can hold a
link that logs the user in.
"""

from __future__ import annotations

import structlog

from notifications.context import NotificationContext
from notifications.enriched_events import EnrichedUserEvent, enrich
from notifications.events import NotificationEvent, UserData
from notifications.resources import UserWithSettings

logger = structlog.get_logger()


async def handle_user_event(ctx: NotificationContext, event: NotificationEvent) -> None:
    data: UserData = event.data
    client = ctx.client

    user = await client.get_user(data.user)
    settings = await client.get_user_settings(data.user)
    token = await client.get_auth_code(data.user)

    group = await ctx.resources.group(event.code) if event.code else None

    enriched = enrich(
        event,
        EnrichedUserEvent,
        target=UserWithSettings(user=user, settings=settings),
        token=token,
        group=group,
    )
    logger.info("user_event_enriched", event_id=event.id, user_id=data.user)
    await ctx.bus.emit(enriched)
