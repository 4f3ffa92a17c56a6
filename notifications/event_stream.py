"""Consumer of the Redis event stream through a consumer group."""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone

import structlog
from redis.exceptions import ResponseError

from notifications.errors import EventParseError, NotificationsError, StreamClosedError
from notifications.events import EventName, NotificationEvent
from shared.config import Settings, get_settings
from shared.redis import close_redis, create_redis

logger = structlog.get_logger()


def parse_entry(entry_id: str, fields: dict[str, str]) -> NotificationEvent:
    """Turn a raw stream entry into an event.

    Raises:
        EventParseError: On an unknown name, an unparseable ``time`` or a
            ``data`` field that is not a JSON object matching the event.
    """
    try:
        name = EventName(fields.get("name", ""))
    except ValueError:
        raise EventParseError(entry_id, f"Unknown event name {fields.get('name')!r}") from None

    try:
        time = datetime.fromisoformat(fields.get("time", ""))
    except ValueError:
        raise EventParseError(entry_id, f"Invalid event time {fields.get('time')!r}") from None
    if time.tzinfo is None:
        time = time.replace(tzinfo=timezone.utc)

    raw_data = fields.get("data")
    data: dict[str, str] = {}
    if raw_data is not None:
        try:
            parsed = json.loads(raw_data)
        except json.JSONDecodeError:
            raise EventParseError(entry_id, "Invalid JSON in event data") from None
        if not isinstance(parsed, dict):
            raise EventParseError(entry_id, "Event data is not a JSON object")
        # Payload fields are ids, anything else is ignored
        data = {k: v for k, v in parsed.items() if isinstance(v, str)}

    try:
        return NotificationEvent.create(
            name,
            fields.get("code", ""),
            data,
            id=entry_id,
            source=fields.get("source", ""),
            time=time,
            user=fields.get("user", ""),
        )
    except ValueError as e:
        raise EventParseError(entry_id, str(e)) from None


class EventStream:
    """Reads one entry at a time as a member of a consumer group.

    ``close`` cancels a pending blocking read, which then raises
    ``StreamClosedError``.
    """

    def __init__(self, redis_client, stream_name: str, group: str, consumer_id: str | None = None):
        self._redis = redis_client
        self.stream_name = stream_name
        self.group = group
        self.consumer_id = consumer_id or str(uuid.uuid4())
        self._read: asyncio.Future | None = None
        self._closed = False

    @classmethod
    async def connect(cls, settings: Settings | None = None) -> EventStream:
        """Open a dedicated connection and make sure the consumer group exists."""
        settings = settings or get_settings()
        client = create_redis(settings.redis_url)
        stream = cls(client, settings.event_stream_name, settings.event_stream_group)
        try:
            await stream.ensure_group()
        except Exception:
            await close_redis(client)
            raise
        return stream

    async def ensure_group(self) -> None:
        try:
            await self._redis.xgroup_create(self.stream_name, self.group, id="$", mkstream=True)
            logger.info("consumer_group_created", stream=self.stream_name, group=self.group)
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                return
            raise

    async def get_next(self) -> NotificationEvent:
        """Block until an entry is delivered to this consumer and parse it."""
        if self._closed:
            raise StreamClosedError("Event stream is closed")

        self._read = asyncio.ensure_future(
            self._redis.xreadgroup(
                self.group,
                self.consumer_id,
                {self.stream_name: ">"},
                count=1,
                block=0,
            )
        )
        try:
            result = await self._read
        except asyncio.CancelledError:
            if self._closed:
                raise StreamClosedError("Event stream closed while reading") from None
            raise
        finally:
            self._read = None

        if not result or not result[0][1]:
            raise NotificationsError("No entry returned by XREADGROUP")

        entry_id, fields = result[0][1][0]
        return parse_entry(entry_id, fields)

    async def ack(self, entry_id: str) -> None:
        await self._redis.xack(self.stream_name, self.group, entry_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._read is not None and not self._read.done():
            self._read.cancel()
        await close_redis(self._redis)
        logger.info("event_stream_closed", stream=self.stream_name, consumer=self.consumer_id)
