"""Redis-backed delayed and recurring job queue.

Layout per queue (``{prefix}:{queue}``):

- ``:job:<id>``   hash with the job fields, kept while the job is live and,
                  when a retention is given, for that long after completion
- ``:delayed``    sorted set of job ids scored by their due timestamp
- ``:active``     sorted set of claimed job ids scored by their lease expiry;
                  a job whose lease runs out (worker crashed or was killed)
                  goes back to ``:delayed``
- ``:schedulers`` hash of recurring schedulers (cron pattern, job name, next run)

Job ids are unique inside a queue: ``add`` returns the existing job instead
of enqueuing a duplicate. Callers that need "replace" semantics remove the
existing job first (see ``notifications.synthetic.shared.queue_job``).
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog
from croniter import croniter
from redis.exceptions import WatchError

logger = structlog.get_logger()

# Failed jobs stay around for inspection this long
KEEP_FAILED_SECONDS = 7 * 24 * 60 * 60

# Maximum number of due jobs claimed per worker tick
CLAIM_BATCH_SIZE = 20

# A claimed job not completed or failed within this time is considered stalled
DEFAULT_LEASE_SECONDS = 15 * 60


def next_cron_time(pattern: str, after: float) -> float:
    """Return the next fire timestamp of a cron pattern strictly after ``after``."""
    start = datetime.fromtimestamp(after, tz=timezone.utc)
    return croniter(pattern, start).get_next(float)


@dataclass
class Job:
    """A job as stored in Redis."""

    queue: JobQueue = field(repr=False)
    id: str
    name: str
    data: dict[str, Any]
    token: str
    delay: float = 0
    run_at: float = 0
    attempts: int = 1
    attempts_made: int = 0
    backoff_seconds: float = 0
    keep_seconds: int = 0
    state: str = "delayed"  # delayed | active | completed | failed

    async def remove(self) -> bool:
        """Remove this job from its queue."""
        return await self.queue.remove(self.id)

    def to_hash(self) -> dict[str, str]:
        return {
            "name": self.name,
            "data": json.dumps(self.data),
            "token": self.token,
            "delay": str(self.delay),
            "run_at": str(self.run_at),
            "attempts": str(self.attempts),
            "attempts_made": str(self.attempts_made),
            "backoff_seconds": str(self.backoff_seconds),
            "keep_seconds": str(self.keep_seconds),
            "state": self.state,
        }

    @classmethod
    def from_hash(cls, queue: JobQueue, job_id: str, raw: dict[str, str]) -> Job:
        return cls(
            queue=queue,
            id=job_id,
            name=raw.get("name", ""),
            data=json.loads(raw.get("data") or "{}"),
            token=raw.get("token", ""),
            delay=float(raw.get("delay", 0)),
            run_at=float(raw.get("run_at", 0)),
            attempts=int(raw.get("attempts", 1)),
            attempts_made=int(raw.get("attempts_made", 0)),
            backoff_seconds=float(raw.get("backoff_seconds", 0)),
            keep_seconds=int(raw.get("keep_seconds", 0)),
            state=raw.get("state", "delayed"),
        )


class JobQueue:
    """Producer and bookkeeping side of a named queue."""

    def __init__(
        self,
        redis_client,
        name: str,
        prefix: str = "jobs",
        clock: Callable[[], float] = time.time,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ):
        self._redis = redis_client
        self.name = name
        self._base = f"{prefix}:{name}"
        self._clock = clock
        self.lease_seconds = lease_seconds

    def _job_key(self, job_id: str) -> str:
        return f"{self._base}:job:{job_id}"

    @property
    def _delayed_key(self) -> str:
        return f"{self._base}:delayed"

    @property
    def _active_key(self) -> str:
        return f"{self._base}:active"

    @property
    def _schedulers_key(self) -> str:
        return f"{self._base}:schedulers"

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def add(
        self,
        name: str,
        data: dict[str, Any] | None = None,
        *,
        job_id: str | None = None,
        delay: float = 0,
        attempts: int = 1,
        backoff_seconds: float = 0,
        keep_seconds: int = 0,
    ) -> Job:
        """Enqueue a job, or return the existing one if ``job_id`` is taken.

        Args:
            name: Job name, used by the worker to pick a handler.
            data: JSON-serializable payload.
            job_id: Stable id. A random one is generated when omitted.
            delay: Seconds to wait before the job becomes due.
            attempts: Total number of tries before the job is marked failed.
            backoff_seconds: Base of the exponential retry delay.
            keep_seconds: Keep the completed job (and its id) this long.
        """
        job_id = job_id or uuid.uuid4().hex
        delay = max(delay, 0)
        job = Job(
            queue=self,
            id=job_id,
            name=name,
            data=data or {},
            token=uuid.uuid4().hex,
            delay=delay,
            run_at=self._clock() + delay,
            attempts=max(attempts, 1),
            backoff_seconds=backoff_seconds,
            keep_seconds=keep_seconds,
        )
        key = self._job_key(job_id)

        # The token field doubles as the id reservation
        if not await self._redis.hsetnx(key, "token", job.token):
            existing = await self.get_job(job_id)
            logger.debug("job_already_exists", queue=self.name, job_id=job_id)
            return existing or job

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=job.to_hash())
            pipe.zadd(self._delayed_key, {job_id: job.run_at})
            await pipe.execute()

        logger.debug("job_added", queue=self.name, job_id=job_id, job_name=name, delay=delay)
        return job

    async def get_job(self, job_id: str) -> Job | None:
        """Return the job stored under ``job_id``, in any state."""
        raw = await self._redis.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return Job.from_hash(self, job_id, raw)

    async def remove(self, job_id: str) -> bool:
        """Delete a job. Returns whether it existed."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._job_key(job_id))
            pipe.zrem(self._delayed_key, job_id)
            pipe.zrem(self._active_key, job_id)
            deleted = (await pipe.execute())[0]
        return bool(deleted)

    async def upsert_job_scheduler(
        self,
        scheduler_id: str,
        pattern: str,
        name: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Create or update a recurring scheduler that enqueues ``name`` on ``pattern``."""
        now = self._clock()
        next_run = next_cron_time(pattern, now)

        current = await self._redis.hget(self._schedulers_key, scheduler_id)
        if current is not None:
            entry = json.loads(current)
            # Keep the pending fire time when the pattern did not change
            if entry.get("pattern") == pattern:
                next_run = entry.get("next_run", next_run)

        entry = {"pattern": pattern, "name": name, "data": data or {}, "next_run": next_run}
        await self._redis.hset(self._schedulers_key, scheduler_id, json.dumps(entry))
        logger.info("job_scheduler_upserted", queue=self.name, scheduler_id=scheduler_id, pattern=pattern)

    async def remove_job_scheduler(self, scheduler_id: str) -> None:
        await self._redis.hdel(self._schedulers_key, scheduler_id)
        logger.info("job_scheduler_removed", queue=self.name, scheduler_id=scheduler_id)

    # ------------------------------------------------------------------
    # Worker-side bookkeeping
    # ------------------------------------------------------------------

    async def promote_schedulers(self, now: float) -> int:
        """Enqueue one job for every scheduler whose fire time has passed."""
        raw = await self._redis.hgetall(self._schedulers_key)
        fired = 0
        for scheduler_id, value in raw.items():
            entry = json.loads(value)
            if entry["next_run"] > now:
                continue
            # One id per fire time, so concurrent workers enqueue it once
            await self.add(
                entry["name"],
                entry.get("data") or {},
                job_id=f"repeat:{scheduler_id}:{int(entry['next_run'])}",
            )
            entry["next_run"] = next_cron_time(entry["pattern"], now)
            await self._redis.hset(self._schedulers_key, scheduler_id, json.dumps(entry))
            fired += 1
        return fired

    async def claim_due(self, now: float, limit: int = CLAIM_BATCH_SIZE) -> list[Job]:
        """Take due jobs off the delayed set and lease them to the caller."""
        job_ids = await self._redis.zrangebyscore(
            self._delayed_key, "-inf", now, start=0, num=limit
        )
        jobs: list[Job] = []
        for job_id in job_ids:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._delayed_key, job_id)
                pipe.zadd(self._active_key, {job_id: now + self.lease_seconds})
                removed, _ = await pipe.execute()
            # ZREM succeeds for exactly one competing worker
            if not removed:
                continue
            job = await self.get_job(job_id)
            if job is None:
                await self._redis.zrem(self._active_key, job_id)
                continue
            await self._redis.hset(self._job_key(job_id), "state", "active")
            job.state = "active"
            jobs.append(job)
        return jobs

    async def _owns(self, job: Job) -> bool:
        """Whether the stored job is still the one that was claimed.

        A handler may remove or replace its own job while running; in that
        case the stored token differs and the new job must be left alone.
        """
        return await self._redis.hget(self._job_key(job.id), "token") == job.token

    async def _back_to_delayed(self, job_id: str, token: str | None = None) -> bool:
        """Move a claimed job back to the delayed set, due now.

        With ``token`` the move only happens while the stored job still
        carries it. Returns False when the job finished, was removed or was
        replaced in the meantime.
        """
        key = self._job_key(job_id)
        run_at = self._clock()
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                state, stored_token = await pipe.hmget(key, "state", "token")
                if state in (None, "completed", "failed") or (token is not None and stored_token != token):
                    return False
                pipe.multi()
                pipe.hset(key, mapping={"state": "delayed", "run_at": str(run_at)})
                pipe.zadd(self._delayed_key, {job_id: run_at})
                pipe.zrem(self._active_key, job_id)
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def requeue(self, job: Job) -> bool:
        """Give a claimed job back without counting an attempt."""
        requeued = await self._back_to_delayed(job.id, job.token)
        if requeued:
            logger.info("job_requeued", queue=self.name, job_id=job.id)
        return requeued

    async def recover_stalled(self, now: float) -> int:
        """Requeue active jobs whose lease ran out, e.g. after a worker crash."""
        job_ids = await self._redis.zrangebyscore(self._active_key, "-inf", now)
        recovered = 0
        for job_id in job_ids:
            if await self._back_to_delayed(job_id):
                logger.warning("job_stalled_recovered", queue=self.name, job_id=job_id)
                recovered += 1
            elif await self._redis.hget(self._job_key(job_id), "state") != "active":
                # Finished or removed meanwhile
                await self._redis.zrem(self._active_key, job_id)
        return recovered

    async def reschedule(self, job: Job, data: dict[str, Any], delay: float) -> Job | None:
        """Replace a claimed job with its next run under the same id.

        Nothing is written when the job was removed or replaced since it was
        claimed; None is returned then.
        """
        delay = max(delay, 0)
        following = Job(
            queue=self,
            id=job.id,
            name=job.name,
            data=data,
            token=uuid.uuid4().hex,
            delay=delay,
            run_at=self._clock() + delay,
            attempts=job.attempts,
            backoff_seconds=job.backoff_seconds,
            keep_seconds=job.keep_seconds,
        )
        key = self._job_key(job.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.hget(key, "token") != job.token:
                    return None
                pipe.multi()
                pipe.delete(key)
                pipe.hset(key, mapping=following.to_hash())
                pipe.zrem(self._active_key, job.id)
                pipe.zadd(self._delayed_key, {job.id: following.run_at})
                await pipe.execute()
            except WatchError:
                return None
        logger.debug("job_rescheduled", queue=self.name, job_id=job.id, delay=delay)
        return following

    async def complete(self, job: Job) -> None:
        if not await self._owns(job):
            return
        key = self._job_key(job.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            if job.keep_seconds > 0:
                pipe.hset(key, "state", "completed")
                pipe.expire(key, job.keep_seconds)
            else:
                pipe.delete(key)
            pipe.zrem(self._active_key, job.id)
            await pipe.execute()

    async def fail(self, job: Job, error: str) -> bool:
        """Record a failed attempt. Returns True when the job will be retried."""
        if not await self._owns(job):
            return False
        key = self._job_key(job.id)
        attempts_made = job.attempts_made + 1

        if attempts_made < job.attempts:
            retry_delay = job.backoff_seconds * (2 ** (attempts_made - 1))
            run_at = self._clock() + retry_delay
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={
                        "attempts_made": str(attempts_made),
                        "state": "delayed",
                        "run_at": str(run_at),
                        "error": error,
                    },
                )
                pipe.zadd(self._delayed_key, {job.id: run_at})
                pipe.zrem(self._active_key, job.id)
                await pipe.execute()
            return True

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={"attempts_made": str(attempts_made), "state": "failed", "error": error},
            )
            pipe.expire(key, KEEP_FAILED_SECONDS)
            pipe.zrem(self._active_key, job.id)
            await pipe.execute()
        return False


Processor = Callable[[Job], Awaitable[None]]


class JobWorker:
    """Polls a queue and runs due jobs one at a time."""

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self._queue = queue
        self._processor = processor
        self._poll_interval = poll_interval
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        logger.info("job_worker_started", queue=self._queue.name)
        while not self._stop.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.error("job_worker_error", queue=self._queue.name, error=str(e))
                processed = 0

            if not processed:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("job_worker_stopped", queue=self._queue.name)

    async def run_once(self) -> int:
        """Recover stalled jobs, fire due schedulers and process the jobs due now.

        Returns the number of jobs processed.
        """
        now = self._clock()
        await self._queue.recover_stalled(now)
        await self._queue.promote_schedulers(now)
        jobs = await self._queue.claim_due(now)
        for index, job in enumerate(jobs):
            try:
                await self._process(job)
            except asyncio.CancelledError:
                # Hand back what this worker will not finish
                for unfinished in jobs[index:]:
                    await self._queue.requeue(unfinished)
                raise
        return len(jobs)

    async def _process(self, job: Job) -> None:
        try:
            await self._processor(job)
        except Exception as e:
            retried = await self._queue.fail(job, str(e))
            logger.error(
                "job_failed",
                queue=self._queue.name,
                job_id=job.id,
                job_name=job.name,
                attempt=job.attempts_made + 1,
                will_retry=retried,
                error=str(e),
            )
            return
        await self._queue.complete(job)
        logger.debug("job_completed", queue=self._queue.name, job_id=job.id, job_name=job.name)

    async def close(self, timeout: float = 10.0) -> None:
        """Stop polling, letting the job in progress finish."""
        self._stop.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("job_worker_cancelled", queue=self._queue.name)
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
