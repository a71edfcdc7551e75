"""
Connection Manager — owns the one broker handle shared by every queue and worker.

The handle is created lazily on first acquire() and torn down exactly once at
shutdown. Queues and workers borrow it and never close it themselves.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog

from job_queue.broker import JobBroker, create_broker

logger = structlog.get_logger().bind(module="queue:connection")

CLOSE_TIMEOUT_SECONDS = 5.0


class ConnectionManager:
    """
    Lifecycle: acquire() → (shared by queues/workers) → close().

    close() is idempotent and never raises: a quit that does not finish within
    close_timeout is followed by a forced disconnect and a warning.
    """

    def __init__(
        self,
        url: str,
        close_timeout: float = CLOSE_TIMEOUT_SECONDS,
        broker_factory: Callable[[str], JobBroker] = create_broker,
    ):
        self.url = url
        self.close_timeout = close_timeout
        self._broker_factory = broker_factory
        self._broker: Optional[JobBroker] = None

    @property
    def is_open(self) -> bool:
        return self._broker is not None

    def acquire(self) -> JobBroker:
        """Return the shared broker handle, creating it on first use."""
        if self._broker is not None:
            return self._broker

        self._broker = self._broker_factory(self.url)
        logger.info("broker_connection_created", url=_redact(self.url))
        return self._broker

    async def check(self) -> bool:
        """Ping the broker. Connectivity problems are logged, never raised."""
        try:
            ok = await self.acquire().ping()
            logger.info("broker_connected", url=_redact(self.url))
            return ok
        except Exception as e:
            logger.error("broker_error", url=_redact(self.url), error=str(e))
            return False

    def replace(self, broker: Optional[JobBroker]):
        """Swap the shared handle (tests inject their own broker here)."""
        self._broker = broker

    async def close(self):
        if self._broker is None:
            return

        broker = self._broker
        self._broker = None

        try:
            await asyncio.wait_for(broker.quit(), timeout=self.close_timeout)
            logger.info("broker_connection_closed")
        except Exception as e:
            logger.warning("broker_quit_timed_out_forcing_disconnect",
                           timeout=self.close_timeout,
                           error=str(e) or type(e).__name__)
            try:
                await broker.disconnect()
            except Exception as disconnect_error:
                logger.warning("broker_disconnect_failed", error=str(disconnect_error))


def _redact(url: str) -> str:
    """Hide the password part of a broker URL for logging."""
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    creds, host = rest.rsplit("@", 1)
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"
