"""Event handlers: resolve the entities an event refers to and emit it enriched."""

from __future__ import annotations

from typing import Awaitable, Callable

import structlog

from notifications.context import NotificationContext
from notifications.events import EventCategory, NotificationEvent
from notifications.handlers.group import handle_group_event
from notifications.handlers.member import handle_member_event
from notifications.handlers.post import handle_post_event
from notifications.handlers.transfer import handle_transfer_event
from notifications.handlers.user import handle_user_event

logger = structlog.get_logger()

Handler = Callable[[NotificationContext, NotificationEvent], Awaitable[None]]

HANDLERS: dict[EventCategory, Handler] = {
    EventCategory.TRANSFER: handle_transfer_event,
    EventCategory.POST: handle_post_event,
    EventCategory.MEMBER: handle_member_event,
    EventCategory.GROUP: handle_group_event,
    EventCategory.USER: handle_user_event,
}


async def dispatch_event(ctx: NotificationContext, event: NotificationEvent) -> None:
    """Enrich ``event`` with the handler of its category and emit it on the bus."""
    handler = HANDLERS.get(event.category)
    if handler is None:
        # Digest events are emitted already enriched by the periodic scans
        logger.info("no_handler_for_event", event_name=event.name.value, event_id=event.id)
        return
    await handler(ctx, event)
