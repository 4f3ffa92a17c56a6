"""Dispatch worker: reads the event stream and feeds every event to its handler."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog

from notifications.channels import init_app_channel, init_email_channel, init_push_channel
from notifications.context import NotificationContext
from notifications.errors import EventParseError
from notifications.event_stream import EventStream
from notifications.handlers import dispatch_event
from notifications.synthetic import init_synthetic_events
from shared.config import Settings

logger = structlog.get_logger()

StreamFactory = Callable[[Settings], Awaitable[EventStream]]


class NotificationsWorker:
    """Runs the channels, the synthetic scheduler and the stream read loop.

    Entries are acknowledged whether or not their processing succeeded.
    """

    def __init__(self, ctx: NotificationContext, stream_factory: StreamFactory = EventStream.connect):
        self.ctx = ctx
        self._stream_factory = stream_factory
        self._stream: EventStream | None = None
        self._loop_task: asyncio.Task | None = None
        self._stoppers: list[Callable[[], Awaitable[None]]] = []
        self._stopped = False

    async def start(self) -> None:
        self._stopped = False
        self._stoppers = [
            init_app_channel(self.ctx),
            init_push_channel(self.ctx),
            init_email_channel(self.ctx),
            await init_synthetic_events(self.ctx),
        ]
        self._stream = await self._stream_factory(self.ctx.settings)
        self._loop_task = asyncio.create_task(self._run())
        logger.info("notifications_worker_started", stream=self._stream.stream_name, group=self._stream.group)

    async def _run(self) -> None:
        stream = self._stream
        while not self._stopped:
            try:
                event = await stream.get_next()
            except EventParseError as e:
                logger.error("event_parse_failed", entry_id=e.entry_id, error=str(e))
                await self._ack(e.entry_id)
                continue
            except Exception as e:
                if self._stopped:
                    break
                logger.error("event_stream_read_failed", error=str(e))
                await asyncio.sleep(self.ctx.settings.stream_retry_delay_seconds)
                continue

            await self.process(event)
            await self._ack(event.id)

    async def _ack(self, entry_id: str) -> None:
        try:
            await self._stream.ack(entry_id)
        except Exception as e:
            logger.error("event_ack_failed", entry_id=entry_id, error=str(e))

    async def process(self, event) -> None:
        """Run one event through its handler. Errors are logged, never raised."""
        logger.info("event_received", event_id=event.id, event_name=event.name.value, code=event.code)
        try:
            await dispatch_event(self.ctx, event)
        except ExceptionGroup as eg:
            logger.error(
                "event_processing_failed",
                event_id=event.id,
                event_name=event.name.value,
                errors=[str(e) for e in eg.exceptions],
            )
        except Exception as e:
            logger.error("event_processing_failed", event_id=event.id, event_name=event.name.value, error=str(e))

    async def stop(self) -> None:
        self._stopped = True
        for stop in self._stoppers:
            try:
                await stop()
            except Exception as e:
                logger.warning("worker_component_stop_failed", error=str(e))
        self._stoppers = []

        if self._stream is not None:
            await self._stream.close()

        if self._loop_task is not None:
            try:
                await self._loop_task
            except Exception as e:
                logger.debug("worker_loop_ended_with_error", error=str(e))
            self._loop_task = None
        logger.info("notifications_worker_stopped")
