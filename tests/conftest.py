"""Shared test fixtures for the CRM job and delivery core."""
import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio

from channels.base import DeliveryResult, OutboundMessage
from job_queue.broker import InMemoryJobBroker
from job_queue.connection import ConnectionManager
from job_queue.service import QueueService


FAST_BLOCK_TIMEOUT = 0.05


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for name in ("REDIS_URL", "SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "SMTP_FROM", "CRM_CONFIG"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def memory_broker() -> InMemoryJobBroker:
    return InMemoryJobBroker()


@pytest.fixture
def connection(memory_broker) -> ConnectionManager:
    return ConnectionManager("memory://", broker_factory=lambda url: memory_broker)


@pytest_asyncio.fixture
async def queue_service(connection):
    service = QueueService(connection, block_timeout=FAST_BLOCK_TIMEOUT)
    yield service
    await service.shutdown()


class FakeTransport:
    """Stands in for SMTPTransport: replays scripted outcomes, records sends."""

    def __init__(self, outcomes: Optional[list[Any]] = None):
        self.outcomes = list(outcomes or [])
        self.sent: list[OutboundMessage] = []
        self.verified = 0
        self.closed = False

    async def send_mail(self, message: OutboundMessage) -> DeliveryResult:
        self.sent.append(message)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return DeliveryResult(message_id=f"<msg-{len(self.sent)}@crm.local>",
                              accepted=message.recipients, rejected=[])

    async def verify(self) -> bool:
        self.verified += 1
        return True

    async def close(self):
        self.closed = True


class SleepRecorder:
    """Async sleep replacement that records requested delays in seconds."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


async def wait_for_condition(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll until predicate() is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def wait_until():
    return wait_for_condition
