"""In-app channel: stores one notification per recipient user."""

from __future__ import annotations

from typing import Awaitable, Callable

import structlog

from notifications.channels.messages import MESSAGE_ROUTES, MessageRoute
from notifications.context import NotificationContext

logger = structlog.get_logger()


def _listener(ctx: NotificationContext, route: MessageRoute):
    async def listener(event) -> None:
        message = route.build(event, ctx.now())
        if message is None:
            logger.debug("app_notification_skipped", event_id=event.id, event_name=event.name.value)
            return

        users = route.recipients(event)
        for recipient in users:
            await ctx.repository.create_notification(
                tenant_id=event.code,
                user_id=recipient.user.id,
                event_id=event.id,
                event_name=event.name.value,
                title=message.title,
                body=message.body,
                image=message.image,
                data={"route": message.route, **message.data},
            )

        logger.info(
            "app_notifications_created",
            event_id=event.id,
            event_name=event.name.value,
            users_count=len(users),
        )

    return listener


def init_app_channel(ctx: NotificationContext) -> Callable[[], Awaitable[None]]:
    """Subscribe the channel to the bus. Returns a coroutine function that unsubscribes it."""
    logger.info("app_channel_initialized")
    unsubscribers = [ctx.bus.on(route.event_name, _listener(ctx, route)) for route in MESSAGE_ROUTES]

    async def stop() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()

    return stop
