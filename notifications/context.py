"""Components shared by handlers, channels and synthetic modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from notifications.cached_resources import CachedResources
from notifications.client import KomunitinClient
from notifications.event_bus import EventBus
from notifications.mailer import Mailer
from notifications.repository import NotificationRepository
from shared.cache import CacheService
from shared.config import Settings
from shared.job_queue import JobQueue


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NotificationContext:
    """Explicitly constructed service graph, built once at startup."""

    settings: Settings
    bus: EventBus
    cache: CacheService
    client: KomunitinClient
    resources: CachedResources
    repository: NotificationRepository
    synthetic_queue: JobQueue
    push_queue: JobQueue
    mailer: Mailer
    now: Callable[[], datetime] = field(default=utc_now)
