"""Push channel.

Listeners only enqueue ``send-push`` jobs, one per subscription. Delivery
happens in the push queue worker so failed sends are retried with backoff.
Payloads are encrypted for the subscription keys and signed with the VAPID
key by pywebpush.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Awaitable, Callable

import structlog
from pywebpush import WebPushException, webpush

from notifications.channels.messages import MESSAGE_ROUTES, Message, MessageRoute
from notifications.context import NotificationContext
from shared.config import Settings
from shared.job_queue import Job, JobWorker
from shared.models import PushSubscription

logger = structlog.get_logger()

SEND_PUSH_JOB = "send-push"

# Push services answer these for subscriptions that will never work again
GONE_STATUSES = {404, 410}

# How long the push service may hold an undelivered message (seconds)
PUSH_TTL = 24 * 60 * 60


def build_payload(message: Message, code: str) -> dict:
    return {
        "title": message.title,
        "body": message.body,
        "icon": message.image,
        "data": {"url": message.route, "code": code, **message.data},
    }


def _listener(ctx: NotificationContext, route: MessageRoute):
    async def listener(event) -> None:
        message = route.build(event, ctx.now())
        if message is None:
            return

        payload = build_payload(message, event.code)
        queued = 0
        for recipient in route.recipients(event):
            subscriptions = await ctx.repository.get_push_subscriptions(event.code, recipient.user.id)
            for subscription in subscriptions:
                await ctx.push_queue.add(
                    SEND_PUSH_JOB,
                    {"subscription_id": str(subscription.id), "payload": payload},
                    attempts=ctx.settings.push_max_attempts,
                    backoff_seconds=ctx.settings.push_backoff_seconds,
                )
                queued += 1

        if queued:
            logger.info("push_notifications_queued", event_id=event.id, event_name=event.name.value, count=queued)

    return listener


def send_web_push(subscription: PushSubscription, payload: dict, settings: Settings) -> None:
    """Blocking send through pywebpush. Raises ``WebPushException`` on error answers."""
    webpush(
        subscription_info={
            "endpoint": subscription.endpoint,
            "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
        },
        data=json.dumps(payload),
        vapid_private_key=settings.vapid_private_key,
        # pywebpush fills in "aud" and "exp", so each send gets its own dict
        vapid_claims={"sub": settings.vapid_subject},
        ttl=PUSH_TTL,
        timeout=settings.http_timeout_seconds,
    )


async def process_push_job(ctx: NotificationContext, job: Job) -> None:
    """Deliver one push message. Raises on failures worth retrying."""
    if job.name != SEND_PUSH_JOB:
        logger.warning("push_unknown_job", job_id=job.id, job_name=job.name)
        return

    subscription = await ctx.repository.get_push_subscription(uuid.UUID(job.data["subscription_id"]))
    if subscription is None:
        logger.info("push_subscription_gone", subscription_id=job.data["subscription_id"])
        return

    try:
        await asyncio.to_thread(send_web_push, subscription, job.data["payload"], ctx.settings)
    except WebPushException as e:
        status = e.response.status_code if e.response is not None else None
        if status in GONE_STATUSES:
            logger.info("push_subscription_invalid", subscription_id=str(subscription.id), status=status)
            await ctx.repository.delete_push_subscription(subscription.id)
            return
        logger.warning("push_send_failed", subscription_id=str(subscription.id), status=status)
        raise RuntimeError(f"Push service answered {status}") from e

    logger.debug("push_sent", subscription_id=str(subscription.id))


def init_push_channel(ctx: NotificationContext) -> Callable[[], Awaitable[None]]:
    """Subscribe the channel and start the push queue worker."""
    logger.info("push_channel_initialized")

    async def processor(job: Job) -> None:
        await process_push_job(ctx, job)

    worker = JobWorker(ctx.push_queue, processor, poll_interval=ctx.settings.job_poll_interval_seconds)
    worker.start()
    unsubscribers = [ctx.bus.on(route.event_name, _listener(ctx, route)) for route in MESSAGE_ROUTES]

    async def stop() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()
        await worker.close()

    return stop
