"""
Queue Service — bundles the shared connection with the queue and worker
registries and owns the ordered shutdown.

Shutdown order is fixed:
  1. stop all workers   — nothing claims new jobs, in-flight jobs settle
  2. close all queues   — no consumer can still enqueue follow-up work
  3. close connection   — outlives every resource that might need to flush
Each phase finishes (including its own waits/timeouts) before the next starts.
"""
from __future__ import annotations

from dataclasses import replace
from functools import partial
from typing import Any, Optional

import structlog

from config.settings import QueueConfig
from job_queue.broker import create_broker
from job_queue.connection import ConnectionManager
from job_queue.models import QUEUE_DEFAULTS, JobHandler, QueueDefaults
from job_queue.queue import QueueRegistry, TypedQueue
from job_queue.worker import Worker, WorkerOptions, WorkerRegistry

logger = structlog.get_logger().bind(module="queue:shutdown")


class QueueService:
    """
    Usage:
        service = create_queue_service(settings.queue)
        emails = service.queue("email", EmailJob)
        await emails.add_job(EmailJob(...))
        await service.start_worker("email", handle_email, WorkerOptions(concurrency=5))
        ...
        await service.shutdown()
    """

    def __init__(
        self,
        connection: ConnectionManager,
        defaults: QueueDefaults = QUEUE_DEFAULTS,
        block_timeout: float = 2.0,
    ):
        self.connection = connection
        self.queues = QueueRegistry(connection, defaults)
        self.workers = WorkerRegistry(connection, block_timeout=block_timeout)

    def queue(self, name: str, payload_type: Optional[type] = None) -> TypedQueue[Any]:
        return self.queues.get_or_create(name, payload_type)

    async def start_worker(
        self,
        queue_name: str,
        handler: JobHandler,
        options: Optional[WorkerOptions] = None,
    ) -> Worker:
        if options is not None and options.payload_type is None:
            registered = self.queues.get(queue_name)
            if registered is not None:
                options = replace(options, payload_type=registered.payload_type)
        return await self.workers.start(queue_name, handler, options)

    async def shutdown(self):
        """Graceful shutdown: workers first, then queues, then connection. Never raises."""
        logger.info("queue_service_shutting_down",
                    workers=self.workers.count(), queues=len(self.queues))
        try:
            await self.workers.stop_all()
        except Exception as e:
            logger.warning("worker_shutdown_error", error=str(e))
        try:
            await self.queues.close_all()
        except Exception as e:
            logger.warning("queue_shutdown_error", error=str(e))
        await self.connection.close()
        logger.info("queue_service_shutdown_complete")


def create_queue_service(config: Optional[QueueConfig] = None) -> QueueService:
    """Factory: build a QueueService from QueueConfig."""
    config = config or QueueConfig()
    connection = ConnectionManager(
        config.broker_url,
        close_timeout=config.close_timeout,
        broker_factory=partial(create_broker, lock_duration_ms=config.lock_duration_ms),
    )
    return QueueService(
        connection,
        defaults=QueueDefaults.from_config(config),
        block_timeout=config.block_timeout,
    )
