"""
Job Broker — Abstract interface with Redis and in-memory backends.

The broker is the durable side of the queue layer: it stores jobs, hands them
to consumers, and applies the per-job retry/backoff/retention policy. Queues
and workers never talk to Redis directly; they go through one shared broker
handle owned by the ConnectionManager.

Redis key layout (per queue, prefix "crm:{queue}:"):
  job:{id}     — JSON job body (only written if absent, which gives deduplication by id)
  seq          — counter handing each job that becomes claimable its place in line
  waiting      — sorted set of claimable ids, score = priority * 2^32 + seq
  delayed      — sorted set of ids not yet claimable, score = ready_at (ms)
  active       — sorted set of claimed ids, score = lock deadline (ms)
  marker       — list consumers block on; one entry per job that became claimable
  completed    — list of finished ids, newest first, trimmed to removeOnComplete
  failed       — list of exhausted ids, newest first, trimmed to removeOnFail

Every move between these keys runs as a WATCH/MULTI transaction, so a crash
never leaves a job body without a place in one of the sets. A claimed job
holds a lock that its worker renews; when the lock runs out (the worker died)
the next claim requeues the job, or fails it if its attempts are used up.
"""
from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections import deque
from functools import partial
from typing import Any, Callable, Optional

import structlog

from job_queue.errors import BrokerError
from job_queue.models import Job, JobState, QueueCounts, now_ms

logger = structlog.get_logger().bind(module="queue:broker")

# States that still occupy a consumer or the schedule
_LIVE_STATES = {JobState.WAITING, JobState.DELAYED, JobState.ACTIVE}

LOCK_DURATION_MS = 30_000
STALLED_REASON = "job stalled more than allowable limit"

# Sequence numbers per priority level; priority <= 2^21 keeps scores exact in a double
_PRIORITY_SHIFT = 2 ** 32
_STALLED_BATCH = 100
_MARKER_CAP = 1000


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobBroker(ABC):
    """Abstract job broker interface."""

    # Set by backends whose claims expire unless the worker renews them
    lock_duration_ms: Optional[int] = None

    @property
    def lock_renew_interval(self) -> Optional[float]:
        """Seconds between lock renewals for a running job, or None if locks never expire."""
        if not self.lock_duration_ms:
            return None
        return self.lock_duration_ms / 2000

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """Store a job. A job whose id is already known is not admitted twice; the stored one is returned."""
        ...

    async def add_bulk(self, jobs: list[Job]) -> list[Job]:
        return [await self.add(job) for job in jobs]

    @abstractmethod
    async def claim(self, queue: str, timeout: float = 2.0) -> Optional[Job]:
        """Wait up to `timeout` seconds for the next ready job and mark it active."""
        ...

    async def extend_lock(self, job: Job) -> bool:
        """Push back the lock deadline of a running job. False if the lock was lost."""
        return True

    @abstractmethod
    async def complete(self, job: Job, result: Any = None):
        ...

    @abstractmethod
    async def fail(self, job: Job, error: BaseException) -> bool:
        """Record a failed attempt. Returns True if the job was rescheduled for another attempt."""
        ...

    @abstractmethod
    async def remove(self, queue: str, job_id: str) -> bool:
        """Remove a job that no consumer has claimed yet."""
        ...

    @abstractmethod
    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def counts(self, queue: str) -> QueueCounts:
        ...

    async def close_queue(self, queue: str):
        """Release producer-side resources for one queue."""

    @abstractmethod
    async def quit(self):
        """Graceful close: let pending commands finish."""
        ...

    @abstractmethod
    async def disconnect(self):
        """Forced close: drop connections immediately."""
        ...


def _retry_delay(job: Job) -> int:
    return job.opts.backoff.delay_for(job.attempts_made)


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisJobBroker(JobBroker):
    """
    Production broker backed by Redis sorted sets and lists.

    Claim order is priority first, then the order in which jobs became
    claimable. Due delayed jobs are promoted before a new job takes its
    sequence number, so a delayed job keeps its place ahead of jobs added
    after it became ready.

    The client retries connection errors indefinitely: retry policy belongs to
    the job layer, so a broker hiccup should stall a caller, never fail it.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "crm",
        client=None,
        lock_duration_ms: int = LOCK_DURATION_MS,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = client if client is not None else self._create_client(redis_url)
        self.lock_duration_ms = lock_duration_ms

    @staticmethod
    def _create_client(redis_url: str):
        import redis.asyncio as aioredis
        from redis.asyncio.retry import Retry
        from redis.backoff import ExponentialBackoff
        from redis.exceptions import ConnectionError as RedisConnectionError
        from redis.exceptions import TimeoutError as RedisTimeoutError

        return aioredis.from_url(
            redis_url,
            decode_responses=True,
            retry=Retry(ExponentialBackoff(cap=10, base=0.1), retries=-1),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            health_check_interval=30,
        )

    @property
    def client(self):
        return self._redis

    def _key(self, queue: str, suffix: str) -> str:
        return f"{self._prefix}:{queue}:{suffix}"

    def _job_key(self, queue: str, job_id: str) -> str:
        return self._key(queue, f"job:{job_id}")

    @staticmethod
    def _waiting_score(job: Job, seq: int) -> int:
        return job.opts.priority * _PRIORITY_SHIFT + seq

    async def _transaction(self, func: Callable, *watches: str) -> Any:
        """Run `func(pipe)` under WATCH, retrying until EXEC succeeds; returns func's value."""
        return await self._redis.transaction(func, *watches, value_from_callable=True)

    def _schedule_into(self, pipe, job: Job, seq: Optional[int]):
        """Queue the commands that place a stored job in waiting (seq given) or delayed."""
        if seq is None:
            pipe.zadd(self._key(job.queue_name, "delayed"), {job.id: job.ready_at})
            return
        marker = self._key(job.queue_name, "marker")
        pipe.zadd(self._key(job.queue_name, "waiting"), {job.id: self._waiting_score(job, seq)})
        pipe.lpush(marker, job.id)
        pipe.ltrim(marker, 0, _MARKER_CAP - 1)

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    # ── Enqueue ───────────────────────────────────────────────

    async def add(self, job: Job) -> Job:
        return (await self.add_bulk([job]))[0]

    async def add_bulk(self, jobs: list[Job]) -> list[Job]:
        """Admit all jobs in one transaction; ids already stored return the stored job."""
        if not jobs:
            return []
        for queue in {job.queue_name for job in jobs}:
            await self._promote_delayed(queue)
        keys = [self._job_key(job.queue_name, job.id) for job in jobs]

        async def admit(pipe):
            stored = await pipe.mget(keys)
            result: list[Job] = []
            fresh: dict[str, Job] = {}
            for job, key, raw in zip(jobs, keys, stored):
                if raw:
                    result.append(Job.from_json(raw))
                elif key in fresh:
                    result.append(fresh[key])
                else:
                    fresh[key] = job
                    result.append(job)

            now = now_ms()
            ready: dict[str, list[Job]] = {}
            for job in fresh.values():
                if job.ready_at <= now:
                    job.state = JobState.WAITING
                    ready.setdefault(job.queue_name, []).append(job)
                else:
                    job.state = JobState.DELAYED
            seqs: dict[str, int] = {}
            for queue, queued in ready.items():
                top = await pipe.incrby(self._key(queue, "seq"), len(queued))
                for offset, job in enumerate(queued):
                    seqs[job.id] = top - len(queued) + 1 + offset

            pipe.multi()
            for key, job in fresh.items():
                pipe.set(key, job.to_json())
                self._schedule_into(pipe, job, seqs.get(job.id))
            return result, len(fresh)

        result, admitted = await self._transaction(admit, *keys)
        if admitted < len(jobs):
            logger.debug("jobs_deduplicated", count=len(jobs) - admitted)
        return result

    # ── Scheduling ────────────────────────────────────────────

    async def _promote_delayed(self, queue: str) -> Optional[int]:
        """Move due delayed jobs to waiting. Returns ms until the next delayed job, if any."""
        delayed_key = self._key(queue, "delayed")
        now = now_ms()
        due = await self._redis.zrangebyscore(delayed_key, "-inf", now)
        promoted = 0
        for job_id in due:
            if await self._transaction(partial(self._promote_one, queue, job_id), delayed_key):
                promoted += 1
        if promoted:
            logger.debug("delayed_jobs_promoted", queue=queue, count=promoted)

        upcoming = await self._redis.zrange(delayed_key, 0, 0, withscores=True)
        if not upcoming:
            return None
        return max(int(upcoming[0][1]) - now_ms(), 0)

    async def _promote_one(self, queue: str, job_id: str, pipe) -> bool:
        delayed_key = self._key(queue, "delayed")
        if await pipe.zscore(delayed_key, job_id) is None:
            return False    # another consumer promoted or removed it
        raw = await pipe.get(self._job_key(queue, job_id))
        seq = await pipe.incr(self._key(queue, "seq"))
        pipe.multi()
        pipe.zrem(delayed_key, job_id)
        if not raw:
            return False
        job = Job.from_json(raw)
        job.state = JobState.WAITING
        pipe.set(self._job_key(queue, job_id), job.to_json())
        self._schedule_into(pipe, job, seq)
        return True

    async def requeue_stalled(self, queue: str) -> int:
        """Recover jobs whose worker stopped renewing the lock. Returns how many were moved."""
        active_key = self._key(queue, "active")
        expired = await self._redis.zrangebyscore(active_key, "-inf", now_ms(), start=0, num=_STALLED_BATCH)
        moved = 0
        for job_id in expired:
            job = await self._transaction(partial(self._recover_one, queue, job_id), active_key)
            if job is None:
                continue
            moved += 1
            if job.state == JobState.FAILED:
                logger.error("stalled_job_failed", queue=queue, job_id=job_id, attempts=job.attempts_made)
                await self._trim(queue, "failed", job.opts.remove_on_fail)
            else:
                logger.warning("stalled_job_requeued", queue=queue, job_id=job_id, attempts=job.attempts_made)
        return moved

    async def _recover_one(self, queue: str, job_id: str, pipe) -> Optional[Job]:
        active_key = self._key(queue, "active")
        deadline = await pipe.zscore(active_key, job_id)
        if deadline is None or deadline > now_ms():
            return None     # finished or renewed meanwhile
        raw = await pipe.get(self._job_key(queue, job_id))
        seq = await pipe.incr(self._key(queue, "seq"))
        pipe.multi()
        pipe.zrem(active_key, job_id)
        if not raw:
            return None
        job = Job.from_json(raw)
        if job.attempts_made >= job.opts.attempts:
            job.state = JobState.FAILED
            job.failed_reason = STALLED_REASON
            job.finished_on = now_ms()
            pipe.set(self._job_key(queue, job_id), job.to_json())
            pipe.lpush(self._key(queue, "failed"), job_id)
        else:
            job.state = JobState.WAITING
            pipe.set(self._job_key(queue, job_id), job.to_json())
            self._schedule_into(pipe, job, seq)
        return job

    # ── Consume ───────────────────────────────────────────────

    async def claim(self, queue: str, timeout: float = 2.0) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            await self.requeue_stalled(queue)
            next_delayed_ms = await self._promote_delayed(queue)
            job = await self._transaction(partial(self._take_next, queue), self._key(queue, "waiting"))
            if job is not None:
                return job

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            wait = remaining if next_delayed_ms is None else min(remaining, next_delayed_ms / 1000)
            # A zero timeout would block forever
            await self._redis.blpop([self._key(queue, "marker")], timeout=max(wait, 0.01))

    async def _take_next(self, queue: str, pipe) -> Optional[Job]:
        waiting_key = self._key(queue, "waiting")
        head = await pipe.zrange(waiting_key, 0, 0)
        if not head:
            return None
        job_id = head[0]
        raw = await pipe.get(self._job_key(queue, job_id))
        pipe.multi()
        pipe.zrem(waiting_key, job_id)
        if not raw:
            return None
        job = Job.from_json(raw)
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.processed_on = now_ms()
        pipe.zadd(self._key(queue, "active"), {job_id: job.processed_on + self.lock_duration_ms})
        pipe.set(self._job_key(queue, job_id), job.to_json())
        return job

    async def extend_lock(self, job: Job) -> bool:
        changed = await self._redis.zadd(
            self._key(job.queue_name, "active"),
            {job.id: now_ms() + self.lock_duration_ms},
            xx=True,
            ch=True,
        )
        return bool(changed)

    # ── Settle ────────────────────────────────────────────────

    async def _settle(self, job: Job, place: Callable) -> bool:
        """Release the job's lock and store its new state. False if the lock was already lost."""
        queue = job.queue_name
        active_key = self._key(queue, "active")

        async def release(pipe):
            if await pipe.zscore(active_key, job.id) is None:
                return False
            pipe.multi()
            pipe.zrem(active_key, job.id)
            pipe.set(self._job_key(queue, job.id), job.to_json())
            place(pipe)
            return True

        settled = await self._transaction(release, active_key)
        if not settled:
            logger.warning("job_lock_lost", queue=queue, job_id=job.id, state=JobState(job.state).value)
        return settled

    async def _trim(self, queue: str, list_name: str, keep: int):
        list_key = self._key(queue, list_name)

        async def prune(pipe):
            evicted = await pipe.lrange(list_key, keep, -1)
            if not evicted:
                return 0
            pipe.multi()
            if keep > 0:
                pipe.ltrim(list_key, 0, keep - 1)
            else:
                pipe.delete(list_key)
            pipe.delete(*[self._job_key(queue, job_id) for job_id in evicted])
            return len(evicted)

        await self._transaction(prune, list_key)

    async def complete(self, job: Job, result: Any = None):
        job.state = JobState.COMPLETED
        job.finished_on = now_ms()
        job.return_value = result
        completed_key = self._key(job.queue_name, "completed")
        if await self._settle(job, lambda pipe: pipe.lpush(completed_key, job.id)):
            await self._trim(job.queue_name, "completed", job.opts.remove_on_complete)

    async def fail(self, job: Job, error: BaseException) -> bool:
        job.failed_reason = str(error) or type(error).__name__
        if job.attempts_made < job.opts.attempts:
            job.state = JobState.DELAYED
            job.ready_at = now_ms() + _retry_delay(job)
            return await self._settle(job, lambda pipe: self._schedule_into(pipe, job, None))

        job.state = JobState.FAILED
        job.finished_on = now_ms()
        failed_key = self._key(job.queue_name, "failed")
        if await self._settle(job, lambda pipe: pipe.lpush(failed_key, job.id)):
            await self._trim(job.queue_name, "failed", job.opts.remove_on_fail)
        return False

    # ── Inspection ────────────────────────────────────────────

    async def remove(self, queue: str, job_id: str) -> bool:
        waiting_key = self._key(queue, "waiting")
        delayed_key = self._key(queue, "delayed")

        async def drop(pipe):
            in_waiting = await pipe.zscore(waiting_key, job_id)
            in_delayed = await pipe.zscore(delayed_key, job_id)
            if in_waiting is None and in_delayed is None:
                return False
            pipe.multi()
            pipe.zrem(waiting_key, job_id)
            pipe.zrem(delayed_key, job_id)
            pipe.delete(self._job_key(queue, job_id))
            return True

        return await self._transaction(drop, waiting_key, delayed_key)

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self._job_key(queue, job_id))
        return Job.from_json(raw) if raw else None

    async def counts(self, queue: str) -> QueueCounts:
        pipe = self._redis.pipeline(transaction=False)
        pipe.zcard(self._key(queue, "waiting"))
        pipe.zcard(self._key(queue, "delayed"))
        pipe.zcard(self._key(queue, "active"))
        pipe.llen(self._key(queue, "completed"))
        pipe.llen(self._key(queue, "failed"))
        waiting, delayed, active, completed, failed = await pipe.execute()
        return QueueCounts(waiting=waiting, delayed=delayed, active=active,
                           completed=completed, failed=failed)

    async def quit(self):
        await self._redis.aclose()

    async def disconnect(self):
        await self._redis.connection_pool.disconnect(inuse_connections=True)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class _MemoryQueue:
    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self.order: dict[str, int] = {}
        self.completed: deque[str] = deque()
        self.failed: deque[str] = deque()
        self.signal = asyncio.Event()


class InMemoryJobBroker(JobBroker):
    """
    Development/test broker backed by asyncio primitives.
    Single-process only — nothing survives a restart.
    """

    def __init__(self):
        self._queues: dict[str, _MemoryQueue] = {}
        self._seq = itertools.count()
        self._closed = False

    def _queue(self, name: str) -> _MemoryQueue:
        if name not in self._queues:
            self._queues[name] = _MemoryQueue()
        return self._queues[name]

    def _check_open(self):
        if self._closed:
            raise BrokerError("Broker connection is closed")

    @property
    def closed(self) -> bool:
        return self._closed

    async def ping(self) -> bool:
        self._check_open()
        return True

    async def add(self, job: Job) -> Job:
        self._check_open()
        q = self._queue(job.queue_name)
        existing = q.jobs.get(job.id)
        if existing is not None:
            logger.debug("job_deduplicated", queue=job.queue_name, job_id=job.id)
            return Job.from_json(existing.to_json())

        stored = Job.from_json(job.to_json())
        q.jobs[stored.id] = stored
        q.order[stored.id] = next(self._seq)
        q.signal.set()
        return Job.from_json(stored.to_json())

    def _next_ready(self, q: _MemoryQueue) -> tuple[Optional[Job], Optional[int]]:
        now = now_ms()
        best: Optional[Job] = None
        next_due: Optional[int] = None
        for job in q.jobs.values():
            if job.state not in (JobState.WAITING, JobState.DELAYED):
                continue
            if job.ready_at > now:
                wait = job.ready_at - now
                next_due = wait if next_due is None else min(next_due, wait)
                continue
            key = (job.opts.priority, job.ready_at, q.order[job.id])
            if best is None or key < (best.opts.priority, best.ready_at, q.order[best.id]):
                best = job
        return best, next_due

    async def claim(self, queue: str, timeout: float = 2.0) -> Optional[Job]:
        self._check_open()
        q = self._queue(queue)
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            q.signal.clear()
            job, next_due_ms = self._next_ready(q)
            if job is not None:
                job.state = JobState.ACTIVE
                job.attempts_made += 1
                job.processed_on = now_ms()
                return Job.from_json(job.to_json())

            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                return None
            wait = remaining if next_due_ms is None else min(remaining, next_due_ms / 1000)
            try:
                await asyncio.wait_for(q.signal.wait(), timeout=max(wait, 0.001))
            except asyncio.TimeoutError:
                pass
            self._check_open()

    def _trim(self, q: _MemoryQueue, ids: deque, keep: int):
        while len(ids) > keep:
            evicted = ids.pop()
            q.jobs.pop(evicted, None)
            q.order.pop(evicted, None)

    async def complete(self, job: Job, result: Any = None):
        q = self._queue(job.queue_name)
        stored = q.jobs.get(job.id)
        if stored is None:
            return
        stored.state = job.state = JobState.COMPLETED
        stored.finished_on = job.finished_on = now_ms()
        stored.return_value = job.return_value = result
        q.completed.appendleft(job.id)
        self._trim(q, q.completed, job.opts.remove_on_complete)

    async def fail(self, job: Job, error: BaseException) -> bool:
        q = self._queue(job.queue_name)
        stored = q.jobs.get(job.id)
        if stored is None:
            return False
        stored.failed_reason = job.failed_reason = str(error) or type(error).__name__
        if stored.attempts_made < stored.opts.attempts:
            stored.state = job.state = JobState.DELAYED
            stored.ready_at = job.ready_at = now_ms() + _retry_delay(stored)
            q.signal.set()
            return True

        stored.state = job.state = JobState.FAILED
        stored.finished_on = job.finished_on = now_ms()
        q.failed.appendleft(job.id)
        self._trim(q, q.failed, job.opts.remove_on_fail)
        return False

    async def remove(self, queue: str, job_id: str) -> bool:
        q = self._queue(queue)
        job = q.jobs.get(job_id)
        if job is None or job.state not in (JobState.WAITING, JobState.DELAYED):
            return False
        del q.jobs[job_id]
        q.order.pop(job_id, None)
        return True

    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        job = self._queue(queue).jobs.get(job_id)
        return Job.from_json(job.to_json()) if job else None

    async def counts(self, queue: str) -> QueueCounts:
        counts = QueueCounts()
        now = now_ms()
        for job in self._queue(queue).jobs.values():
            if job.state in (JobState.WAITING, JobState.DELAYED):
                if job.ready_at > now:
                    counts.delayed += 1
                else:
                    counts.waiting += 1
            elif job.state == JobState.ACTIVE:
                counts.active += 1
            elif job.state == JobState.COMPLETED:
                counts.completed += 1
            elif job.state == JobState.FAILED:
                counts.failed += 1
        return counts

    def live_jobs(self, queue: str) -> list[Job]:
        """Jobs that are still pending or running (test/inspection helper)."""
        return [j for j in self._queue(queue).jobs.values() if j.state in _LIVE_STATES]

    async def quit(self):
        self._closed = True
        for q in self._queues.values():
            q.signal.set()

    async def disconnect(self):
        await self.quit()


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_broker(url: str, lock_duration_ms: int = LOCK_DURATION_MS) -> JobBroker:
    """Factory: create the broker backend matching the URL scheme."""
    if url.startswith("memory://"):
        return InMemoryJobBroker()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisJobBroker(redis_url=url, lock_duration_ms=lock_duration_ms)
    raise BrokerError(f"Unsupported broker URL: {url}")
