"""
Queue Registry — one typed producer wrapper per logical queue name.

A queue name is bound to its payload type when it is first registered.
Asking for the same name with a different payload type is a programming
error and raises QueueTypeMismatchError instead of silently handing back a
wrapper for the wrong payload shape.
"""
from __future__ import annotations

import asyncio
from typing import Any, Generic, Iterable, Optional, Sequence, Union

import structlog
from pydantic import BaseModel

from job_queue.broker import JobBroker
from job_queue.connection import ConnectionManager
from job_queue.errors import QueueTypeMismatchError
from job_queue.models import QUEUE_DEFAULTS, Job, JobOptions, QueueCounts, QueueDefaults, T

logger = structlog.get_logger().bind(module="queue:queue")

BulkItem = Union[Any, tuple[Any, Optional[JobOptions]]]


def encode_payload(data: Any) -> Any:
    """Convert a payload into its JSON-safe wire form."""
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    return data


def decode_payload(raw: Any, payload_type: Optional[type]) -> Any:
    """Rebuild a typed payload from its wire form for handlers."""
    if payload_type is not None and isinstance(payload_type, type) and issubclass(payload_type, BaseModel):
        return payload_type.model_validate(raw)
    return raw


class TypedQueue(Generic[T]):
    """Producer side of a named queue bound to the shared broker."""

    def __init__(
        self,
        name: str,
        connection: ConnectionManager,
        defaults: QueueDefaults = QUEUE_DEFAULTS,
        payload_type: Optional[type] = None,
    ):
        self.name = name
        self.payload_type = payload_type
        self.defaults = defaults
        self._connection = connection
        self._closed = False

    @property
    def broker(self) -> JobBroker:
        return self._connection.acquire()

    @property
    def closed(self) -> bool:
        return self._closed

    def _build(self, data: T, options: Optional[JobOptions]) -> Job:
        opts = (options or JobOptions()).resolve(self.defaults)
        return Job(queue_name=self.name, data=encode_payload(data), opts=opts)

    async def add_job(self, data: T, options: Optional[JobOptions] = None) -> Job[T]:
        """Add a job to the queue."""
        job = await self.broker.add(self._build(data, options))
        logger.debug("job_added", queue=self.name, job_id=job.id)
        return job

    async def add_bulk(self, jobs: Iterable[BulkItem]) -> list[Job[T]]:
        """Add several jobs in one broker round trip. Items are payloads or (payload, options) pairs."""
        built = []
        for item in jobs:
            if isinstance(item, tuple):
                data, options = item
            else:
                data, options = item, None
            built.append(self._build(data, options))
        result = await self.broker.add_bulk(built)
        logger.debug("bulk_jobs_added", queue=self.name, count=len(result))
        return result

    async def remove_job(self, job_id: str) -> bool:
        """Remove a job that no worker has claimed yet."""
        removed = await self.broker.remove(self.name, job_id)
        logger.debug("job_removed", queue=self.name, job_id=job_id, removed=removed)
        return removed

    async def get_job(self, job_id: str) -> Optional[Job[T]]:
        job = await self.broker.get_job(self.name, job_id)
        if job is None:
            return None
        return job.with_data(decode_payload(job.data, self.payload_type))

    async def counts(self) -> QueueCounts:
        return await self.broker.counts(self.name)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self._connection.is_open:
            await self._connection.acquire().close_queue(self.name)


class QueueRegistry:
    """Caches one TypedQueue per name; every queue borrows the shared connection."""

    def __init__(self, connection: ConnectionManager, defaults: QueueDefaults = QUEUE_DEFAULTS):
        self._connection = connection
        self._defaults = defaults
        self._queues: dict[str, TypedQueue[Any]] = {}

    def get_or_create(self, name: str, payload_type: Optional[type] = None) -> TypedQueue[Any]:
        # No await between lookup and insert: two first-time lookups for the
        # same name in one event loop always see the same wrapper.
        existing = self._queues.get(name)
        if existing is not None:
            if payload_type is not None and existing.payload_type is not payload_type:
                raise QueueTypeMismatchError(name, existing.payload_type or object, payload_type)
            return existing

        queue = TypedQueue(name, self._connection, self._defaults, payload_type)
        self._queues[name] = queue
        logger.debug("queue_created", queue=name)
        return queue

    def get(self, name: str) -> Optional[TypedQueue[Any]]:
        return self._queues.get(name)

    def names(self) -> Sequence[str]:
        return list(self._queues)

    def __len__(self) -> int:
        return len(self._queues)

    def __contains__(self, name: str) -> bool:
        return name in self._queues

    async def close(self, name: str):
        queue = self._queues.pop(name, None)
        if queue is not None:
            await queue.close()
            logger.debug("queue_closed", queue=name)

    async def close_all(self):
        queues = list(self._queues.values())
        await asyncio.gather(*(q.close() for q in queues))
        self._queues.clear()
        logger.debug("all_queues_closed", count=len(queues))
