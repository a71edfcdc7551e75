"""
Job queue: one shared broker connection, named queues, named workers.

- ConnectionManager owns the broker handle (Redis in production, in-memory for dev/tests)
- QueueRegistry hands out one TypedQueue per name for producers
- WorkerRegistry runs one consumer per name, replacing it safely on restart
- QueueService ties them together and shuts down in order
"""
from job_queue.broker import InMemoryJobBroker, JobBroker, RedisJobBroker, create_broker
from job_queue.connection import ConnectionManager
from job_queue.errors import BrokerError, QueueError, QueueTypeMismatchError, WorkerStateError
from job_queue.models import (
    QUEUE_DEFAULTS,
    Backoff,
    BackoffType,
    Job,
    JobOptions,
    JobState,
    QueueCounts,
    QueueDefaults,
)
from job_queue.queue import QueueRegistry, TypedQueue
from job_queue.service import QueueService, create_queue_service
from job_queue.worker import Worker, WorkerOptions, WorkerRegistry

__all__ = [
    "JobBroker", "RedisJobBroker", "InMemoryJobBroker", "create_broker",
    "ConnectionManager",
    "QueueError", "BrokerError", "QueueTypeMismatchError", "WorkerStateError",
    "Job", "JobOptions", "JobState", "Backoff", "BackoffType",
    "QueueDefaults", "QUEUE_DEFAULTS", "QueueCounts",
    "QueueRegistry", "TypedQueue",
    "WorkerRegistry", "Worker", "WorkerOptions",
    "QueueService", "create_queue_service",
]
