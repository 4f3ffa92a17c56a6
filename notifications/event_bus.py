"""In-process publish/subscribe bus for enriched events."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()

Listener = Callable[[Any], Awaitable[None]]
Unsubscribe = Callable[[], None]


def _key(name: Any) -> str:
    # Accept EventName members and plain strings alike
    return getattr(name, "value", name)


class EventBus:
    """Fans each event out to every listener registered for its name.

    Listeners run concurrently. ``emit`` waits for all of them and then
    re-raises: the error itself when exactly one listener failed, or an
    ``ExceptionGroup`` with every error when several did.
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, name: str, listener: Listener) -> Unsubscribe:
        """Register ``listener`` for events called ``name``. Returns an unsubscribe function."""
        self._listeners[_key(name)].append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(_key(name))
            if listeners and listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(_key(name), []))

    async def emit(self, event: Any) -> None:
        # Snapshot so listeners may unsubscribe while the event is in flight
        listeners = list(self._listeners.get(_key(event.name), []))
        if not listeners:
            return

        results = await asyncio.gather(
            *(listener(event) for listener in listeners), return_exceptions=True
        )
        errors = [r for r in results if isinstance(r, Exception)]

        if len(errors) == 1:
            raise errors[0]
        if errors:
            logger.warning("event_bus_multiple_errors", event_name=_key(event.name), count=len(errors))
            raise ExceptionGroup(f"{len(errors)} listeners failed for {_key(event.name)}", errors)
