"""
Worker Registry — named consumers bound to a queue.

Each named slot moves EMPTY → RUNNING → STOPPING → EMPTY. Starting a worker
under a name that already has one first drives the old worker through
STOPPING (it stops claiming and finishes its in-flight jobs) and only then
registers the replacement, so one name never has two consumers draining the
same queue.

  ┌────────┐  claim   ┌──────────┐  handler ok   ┌───────────┐
  │ broker │─────────▶│  Worker  │──────────────▶│ completed │──▶ on_completed
  │ queue  │◀─ retry ─│ (N slots)│──── raises ──▶│  failed   │──▶ on_failed
  └────────┘  backoff └──────────┘               └───────────┘
"""
from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional

import structlog

from job_queue.connection import ConnectionManager
from job_queue.errors import WorkerStateError
from job_queue.models import CompletedCallback, FailedCallback, Job, JobHandler, T
from job_queue.queue import decode_payload, encode_payload

logger = structlog.get_logger().bind(module="queue:worker")


@dataclass
class WorkerOptions:
    name: Optional[str] = None                     # registry name, defaults to the queue name
    concurrency: int = 1                           # max simultaneous job executions
    on_completed: Optional[CompletedCallback] = None
    on_failed: Optional[FailedCallback] = None     # fires on every failed attempt
    payload_type: Optional[type] = None            # pydantic model handlers receive


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class SlotState(str, Enum):
    EMPTY = "empty"
    RUNNING = "running"
    STOPPING = "stopping"


class Worker(Generic[T]):
    """
    Consumes one queue with up to `concurrency` handler executions in flight.

    Usage:
        worker = Worker("email", handle_email, connection, WorkerOptions(concurrency=5))
        worker.start()
        ...
        await worker.stop()   # stops claiming, waits for in-flight jobs
    """

    def __init__(
        self,
        queue_name: str,
        handler: JobHandler,
        connection: ConnectionManager,
        options: Optional[WorkerOptions] = None,
        block_timeout: float = 2.0,
    ):
        self.queue_name = queue_name
        self.options = options or WorkerOptions()
        self.name = self.options.name or queue_name
        self.concurrency = max(int(self.options.concurrency or 1), 1)
        self._handler = handler
        self._connection = connection
        self._block_timeout = block_timeout
        self._state = WorkerState.IDLE
        self._loops: list[asyncio.Task] = []
        self._in_flight: set[str] = set()
        self._processed = 0
        self._failed = 0

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == WorkerState.RUNNING

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "queue": self.queue_name,
            "state": self._state.value,
            "concurrency": self.concurrency,
            "in_flight": len(self._in_flight),
            "processed": self._processed,
            "failed": self._failed,
        }

    def start(self):
        if self._state != WorkerState.IDLE:
            raise WorkerStateError(f"Worker '{self.name}' cannot start from state {self._state.value}")
        self._state = WorkerState.RUNNING
        self._loops = [
            asyncio.create_task(self._consume_loop(slot), name=f"worker:{self.name}:{slot}")
            for slot in range(self.concurrency)
        ]

    async def stop(self):
        """Stop claiming new jobs and wait for every in-flight job to settle."""
        if self._state in (WorkerState.IDLE, WorkerState.STOPPED):
            self._state = WorkerState.STOPPED
            return
        if self._state == WorkerState.STOPPING:
            await asyncio.gather(*self._loops, return_exceptions=True)
            return

        self._state = WorkerState.STOPPING
        logger.debug("worker_stopping", worker=self.name, in_flight=len(self._in_flight))
        # Loops exit after their current claim returns; a job claimed meanwhile is still processed.
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()
        self._state = WorkerState.STOPPED
        logger.info("worker_stopped", worker=self.name, queue=self.queue_name,
                    processed=self._processed, failed=self._failed)

    async def _consume_loop(self, slot: int):
        while self._state == WorkerState.RUNNING:
            try:
                job = await self._connection.acquire().claim(self.queue_name, timeout=self._block_timeout)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_error", worker=self.name, queue=self.queue_name, error=str(e))
                await asyncio.sleep(1)
                continue

            if job is None:
                continue
            try:
                await self._process(job)
            except Exception as e:
                # Broker bookkeeping failed; once the job's lock expires the broker requeues it.
                logger.error("job_bookkeeping_error", worker=self.name, job_id=job.id, error=str(e))

    async def _process(self, job: Job):
        broker = self._connection.acquire()
        self._in_flight.add(job.id)
        typed_job = job
        try:
            logger.debug("job_processing", queue=self.queue_name, job_id=job.id,
                         attempt=job.attempts_made)
            try:
                typed_job = job.with_data(decode_payload(job.data, self.options.payload_type))
                async with self._holding_lock(broker, job):
                    result = await self._handler(typed_job)
            except Exception as e:
                will_retry = await broker.fail(job, e)
                self._failed += 1
                logger.error("job_failed",
                             queue=self.queue_name,
                             job_id=job.id,
                             attempt=job.attempts_made,
                             will_retry=will_retry,
                             error=str(e) or type(e).__name__)
                await self._fire(self.options.on_failed, typed_job, e)
                return

            await broker.complete(job, encode_payload(result))
            self._processed += 1
            logger.debug("job_completed", queue=self.queue_name, job_id=job.id)
            await self._fire(self.options.on_completed, typed_job, result)
        finally:
            self._in_flight.discard(job.id)

    @asynccontextmanager
    async def _holding_lock(self, broker, job: Job):
        """Renew the broker lock on `job` for as long as the block runs."""
        interval = broker.lock_renew_interval
        if not interval:
            yield
            return
        renewal = asyncio.create_task(self._renew_lock(broker, job, interval))
        try:
            yield
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)

    async def _renew_lock(self, broker, job: Job, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                if not await broker.extend_lock(job):
                    logger.warning("job_lock_lost", worker=self.name, job_id=job.id)
                    return
            except Exception as e:
                logger.error("job_lock_renew_error", worker=self.name, job_id=job.id, error=str(e))

    async def _fire(self, callback, *args):
        if callback is None:
            return
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error("worker_callback_error", worker=self.name, error=str(e))


class WorkerRegistry:
    """Maps worker names to running consumers; one active worker per name."""

    def __init__(self, connection: ConnectionManager, block_timeout: float = 2.0):
        self._connection = connection
        self._block_timeout = block_timeout
        self._workers: dict[str, Worker] = {}
        self._stopping: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    async def start(
        self,
        queue_name: str,
        handler: JobHandler,
        options: Optional[WorkerOptions] = None,
    ) -> Worker:
        options = options or WorkerOptions()
        name = options.name or queue_name

        async with self._lock(name):
            existing = self._workers.pop(name, None)
            if existing is not None:
                logger.info("worker_replacing", worker=name)
                self._stopping.add(name)
                try:
                    await existing.stop()
                finally:
                    self._stopping.discard(name)

            worker = Worker(queue_name, handler, self._connection, options, self._block_timeout)
            worker.start()
            self._workers[name] = worker

        logger.info("worker_started", queue=queue_name, worker=name, concurrency=worker.concurrency)
        return worker

    def slot_state(self, name: str) -> SlotState:
        if name in self._stopping:
            return SlotState.STOPPING
        if name in self._workers:
            return SlotState.RUNNING
        return SlotState.EMPTY

    def get(self, name: str) -> Optional[Worker]:
        return self._workers.get(name)

    def count(self) -> int:
        return len(self._workers)

    def __len__(self) -> int:
        return len(self._workers)

    async def stop(self, name: str) -> bool:
        async with self._lock(name):
            worker = self._workers.pop(name, None)
            if worker is None:
                return False
            self._stopping.add(name)
            try:
                await worker.stop()
            finally:
                self._stopping.discard(name)
            return True

    async def stop_all(self):
        workers = list(self._workers.items())
        self._workers.clear()
        self._stopping.update(name for name, _ in workers)
        try:
            await asyncio.gather(*(w.stop() for _, w in workers))
        finally:
            self._stopping.difference_update(name for name, _ in workers)
        logger.info("all_workers_stopped", count=len(workers))
