"""Shared test fixtures for the notifications test suite.

Provides Redis and database mocks, an in-memory job queue with the same
interface as ``shared.job_queue.JobQueue``, resource factories and a
``NotificationContext`` wired with mocks, so tests run without Redis,
Postgres or the Komunitin APIs.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from notifications.cached_resources import CachedResources
from notifications.client import KomunitinClient
from notifications.context import NotificationContext
from notifications.event_bus import EventBus
from notifications.events import EventName
from notifications.mailer import Mailer
from notifications.repository import NotificationRepository
from notifications.resources import (
    Account,
    Currency,
    Group,
    Member,
    Post,
    User,
    UserSettings,
    UserWithSettings,
)
from shared.cache import CacheService
from shared.config import Settings
from shared.job_queue import Job

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db_session():
    """Mock async SQLAlchemy session.

    Supports ``session.execute``, ``session.get``, ``session.add``,
    ``session.delete`` and ``session.commit``.
    """
    session = AsyncMock()
    default_result = MagicMock()
    default_result.scalar_one_or_none.return_value = None
    default_result.scalars.return_value.all.return_value = []
    default_result.all.return_value = []
    session.execute = AsyncMock(return_value=default_result)
    session.get = AsyncMock(return_value=None)
    session.add = MagicMock()
    return session


@pytest.fixture
def mock_session_factory(mock_db_session):
    """Mock session factory compatible with ``async with factory() as session:``."""

    @asynccontextmanager
    async def _session_ctx():
        yield mock_db_session

    return MagicMock(side_effect=lambda: _session_ctx())


# ---------------------------------------------------------------------------
# Redis mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_redis():
    """Mock async Redis client with common operations."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.delete = AsyncMock()
    redis.xack = AsyncMock()
    return redis


# ---------------------------------------------------------------------------
# In-memory job queue
# ---------------------------------------------------------------------------


class FakeJobQueue:
    """Producer side of ``JobQueue`` kept in dictionaries.

    Completed-job retention is not modelled: a job stays until removed.
    """

    def __init__(self, name: str = "synthetic-events"):
        self.name = name
        self.jobs: dict[str, Job] = {}
        self.schedulers: dict[str, dict] = {}

    async def add(
        self,
        name,
        data=None,
        *,
        job_id=None,
        delay=0,
        attempts=1,
        backoff_seconds=0,
        keep_seconds=0,
    ) -> Job:
        job_id = job_id or uuid.uuid4().hex
        if job_id in self.jobs:
            return self.jobs[job_id]
        job = Job(
            queue=self,
            id=job_id,
            name=name,
            data=data or {},
            token=uuid.uuid4().hex,
            delay=max(delay, 0),
            attempts=attempts,
            backoff_seconds=backoff_seconds,
            keep_seconds=keep_seconds,
        )
        self.jobs[job_id] = job
        return job

    async def get_job(self, job_id):
        return self.jobs.get(job_id)

    async def remove(self, job_id) -> bool:
        return self.jobs.pop(job_id, None) is not None

    async def reschedule(self, job, data, delay) -> Job | None:
        stored = self.jobs.get(job.id)
        if stored is None or stored.token != job.token:
            return None
        following = Job(
            queue=self,
            id=job.id,
            name=job.name,
            data=data,
            token=uuid.uuid4().hex,
            delay=max(delay, 0),
            attempts=job.attempts,
            backoff_seconds=job.backoff_seconds,
            keep_seconds=job.keep_seconds,
        )
        self.jobs[job.id] = following
        return following

    async def upsert_job_scheduler(self, scheduler_id, pattern, name, data=None):
        self.schedulers[scheduler_id] = {"pattern": pattern, "name": name, "data": data or {}}

    async def remove_job_scheduler(self, scheduler_id):
        self.schedulers.pop(scheduler_id, None)

    # Worker side: nothing is ever due, tests run job handlers directly

    async def promote_schedulers(self, now) -> int:
        return 0

    async def claim_due(self, now, limit=20) -> list[Job]:
        return []

    async def recover_stalled(self, now) -> int:
        return 0

    async def requeue(self, job) -> bool:
        return job.id in self.jobs


@pytest.fixture
def synthetic_queue():
    return FakeJobQueue("synthetic-events")


@pytest.fixture
def push_queue():
    return FakeJobQueue("push")


@pytest.fixture
def make_job(synthetic_queue):
    """A claimed synthetic job carrying ``payload``, for calling job handlers directly."""

    def _make(payload, job_id: str = "job-1") -> Job:
        return Job(
            queue=synthetic_queue,
            id=job_id,
            name=payload.name,
            data=payload.model_dump(mode="json", exclude={"name"}),
            token=uuid.uuid4().hex,
            state="active",
        )

    return _make


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return Settings(_env_file=None, oauth_client_secret="secret")


@pytest.fixture
def ctx(settings, now, synthetic_queue, push_queue):
    """Context with mocked client, cached resources, repository and mailer."""
    repository = MagicMock(spec=NotificationRepository)
    repository.last_notification_by_user.return_value = {}
    repository.get_push_subscriptions.return_value = []
    return NotificationContext(
        settings=settings,
        bus=EventBus(),
        cache=MagicMock(spec=CacheService),
        client=MagicMock(spec=KomunitinClient),
        resources=MagicMock(spec=CachedResources),
        repository=repository,
        synthetic_queue=synthetic_queue,
        push_queue=push_queue,
        mailer=MagicMock(spec=Mailer),
        now=lambda: now,
    )


@pytest.fixture
def emitted(ctx):
    """Every event emitted on the context bus, in order."""
    events = []

    async def record(event):
        events.append(event)

    for name in EventName:
        ctx.bus.on(name, record)
    return events


# ---------------------------------------------------------------------------
# Resource factories
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@pytest.fixture
def make_group():
    def _make(code: str = "GRP0", name: str = "Test Group", admin_ids: tuple[str, ...] = ()) -> Group:
        return Group(
            id=f"group-{code}",
            type="groups",
            attributes={"code": code, "name": name, "image": f"https://img/{code}.png", "status": "active"},
            relationships={"admins": {"data": [{"type": "users", "id": a} for a in admin_ids]}},
        )

    return _make


@pytest.fixture
def make_member():
    def _make(
        member_id: str = "member-1",
        name: str | None = None,
        created: datetime | None = None,
        account_id: str | None = None,
        offers: int = 0,
        needs: int = 0,
        description: str = "",
        city: str | None = None,
    ) -> Member:
        return Member(
            id=member_id,
            type="members",
            attributes={
                "code": f"GRP0{member_id}",
                "name": name or member_id.title(),
                "created": _iso(created or NOW),
                "description": description,
                "location": {"name": city} if city else {},
            },
            relationships={
                "account": {"data": {"type": "accounts", "id": account_id or f"account-{member_id}"}},
                "offers": {"meta": {"count": offers}},
                "needs": {"meta": {"count": needs}},
            },
        )

    return _make


@pytest.fixture
def make_user():
    """Factory for ``UserWithSettings`` belonging to the given members."""

    def _make(user_id: str = "user-1", member_ids: tuple[str, ...] = ()) -> UserWithSettings:
        return UserWithSettings(
            user=User(
                id=user_id,
                type="users",
                attributes={"email": f"{user_id}@example.com"},
                relationships={
                    "members": {"data": [{"type": "members", "id": m} for m in member_ids]},
                    "settings": {"data": {"type": "user-settings", "id": f"settings-{user_id}"}},
                },
            ),
            settings=UserSettings(id=f"settings-{user_id}", type="user-settings", attributes={"language": "en"}),
        )

    return _make


@pytest.fixture
def make_post():
    def _make(
        post_id: str = "post-1",
        post_type: str = "offers",
        member_id: str = "member-1",
        created: datetime | None = None,
        expires: datetime | None = None,
        title: str = "Bicycle repair",
    ) -> Post:
        title_field = "name" if post_type == "offers" else "content"
        return Post(
            id=post_id,
            type=post_type,
            attributes={
                "code": post_id.upper(),
                title_field: title,
                "created": _iso(created or NOW),
                "expires": _iso(expires),
            },
            relationships={"member": {"data": {"type": "members", "id": member_id}}},
        )

    return _make


@pytest.fixture
def make_account():
    def _make(account_id: str = "account-1", balance: float = 0) -> Account:
        return Account(id=account_id, type="accounts", attributes={"code": "GRP00001", "balance": balance})

    return _make


@pytest.fixture
def make_currency():
    def _make(code: str = "GRP0") -> Currency:
        return Currency(
            id=f"currency-{code}",
            type="currencies",
            attributes={"code": code, "symbol": "ħ", "decimals": 2, "scale": 4},
        )

    return _make
