"""Exceptions raised by the notifications subsystem."""

from __future__ import annotations


class NotificationsError(Exception):
    """Base class for notifications errors."""


class EventParseError(NotificationsError):
    """A stream entry could not be turned into an event.

    Carries the entry id so the consumer can still acknowledge it.
    """

    def __init__(self, entry_id: str, message: str):
        super().__init__(f"{message} (entry {entry_id})")
        self.entry_id = entry_id


class StreamClosedError(NotificationsError):
    """The event stream was closed while a read was pending."""


class EnrichmentError(NotificationsError):
    """An entity referenced by an event is missing from the upstream response."""


class ApiError(NotificationsError):
    """An upstream API answered with a non-success status."""

    def __init__(self, status_code: int, url: str, detail: str = ""):
        super().__init__(f"API error {status_code} at {url}: {detail[:300]}")
        self.status_code = status_code
        self.url = url
