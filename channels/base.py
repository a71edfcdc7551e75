"""
Delivery pipeline — transport-agnostic core for outbound messages.

Provides:
- ChannelError / EmailValidationError: structured error hierarchy
- OutboundMessage / DeliveryResult: what goes in and what comes back
- is_transient_error: classifies transport failures as transient or permanent
- DeliveryPipeline: lazily-created transport session + bounded retry loop

Retry model per send:

  ATTEMPT(n) ── ok ──────────────────────────────▶ SENT
      │
      └─ error ─ transient and n < max_attempts ─▶ wait base × 2^(n-1) ─▶ ATTEMPT(n+1)
              └─ otherwise ──────────────────────▶ FAILED (last error re-raised unchanged)

This is the delivery-level budget. A job handler that calls the pipeline adds
the queue-level budget on top: a job whose send exhausts these attempts fails
and the broker may redeliver it later.
"""
from __future__ import annotations

import asyncio
import errno
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import aiosmtplib
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

logger = structlog.get_logger().bind(module="email:transport")

RETRY_ATTEMPTS = 3
BASE_DELAY_MS = 1000

# Network error codes that are transient
TRANSIENT_NETWORK_CODES = frozenset({
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ESOCKET",
    "ENOTFOUND",
})


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class EmailValidationError(ChannelError):
    """An outgoing email failed validation; `field` names the offending part."""

    def __init__(self, message: str, field: str):
        self.field = field
        super().__init__(message, channel="email", retryable=False)


# ══════════════════════════════════════════════════════════════
#  MESSAGE & RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class OutboundMessage:
    to: Union[str, list[str]]
    subject: str
    text: str = ""
    html: Optional[str] = None
    reply_to: Optional[str] = None

    @property
    def recipients(self) -> list[str]:
        return [self.to] if isinstance(self.to, str) else list(self.to)


@dataclass
class DeliveryResult:
    message_id: str
    accepted: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"message_id": self.message_id, "accepted": self.accepted, "rejected": self.rejected}


class Transport(Protocol):
    async def send_mail(self, message: OutboundMessage) -> DeliveryResult: ...

    async def verify(self) -> bool: ...

    async def close(self) -> None: ...


# ══════════════════════════════════════════════════════════════
#  ERROR CLASSIFICATION
# ══════════════════════════════════════════════════════════════

def network_error_code(exc: BaseException) -> Optional[str]:
    """Map a connection-level failure to its network error code, if it has one."""
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(exc, socket.gaierror):
        return "ENOTFOUND"
    if isinstance(exc, ConnectionResetError):
        return "ECONNRESET"
    if isinstance(exc, ConnectionRefusedError):
        return "ECONNREFUSED"
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, aiosmtplib.SMTPTimeoutError)):
        return "ETIMEDOUT"
    if isinstance(exc, (aiosmtplib.SMTPServerDisconnected, aiosmtplib.SMTPConnectError)):
        return "ESOCKET"
    if isinstance(exc, OSError) and exc.errno is not None:
        return errno.errorcode.get(exc.errno)
    return None


def response_code(exc: BaseException) -> Optional[int]:
    """The transport (SMTP) reply code carried by an error, if any."""
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return exc.code
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        # Every recipient was refused; the last refusal decides
        codes = [r.code for r in exc.recipients if isinstance(getattr(r, "code", None), int)]
        return codes[-1] if codes else None
    code = getattr(exc, "response_code", None)
    return code if isinstance(code, int) else None


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if error is transient and worth retrying.
    - Network errors (ECONNRESET, ETIMEDOUT, etc.)
    - 4xx response codes (temporary failures)
    5xx codes are permanent failures and are never retried.
    """
    if network_error_code(exc) in TRANSIENT_NETWORK_CODES:
        return True
    code = response_code(exc)
    if code is not None:
        return 400 <= code < 500
    return False


# ══════════════════════════════════════════════════════════════
#  DELIVERY PIPELINE
# ══════════════════════════════════════════════════════════════

class DeliveryPipeline:
    """
    Wraps a pooled transport session with the bounded retry loop.

    The session is created on first send, health-checked in the background
    right after creation, and recreated transparently after close_transport().
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        max_attempts: int = RETRY_ATTEMPTS,
        base_delay_ms: int = BASE_DELAY_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._transport_factory = transport_factory
        self.max_attempts = max(max_attempts, 1)
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep
        self._transport: Optional[Transport] = None
        self._background: set[asyncio.Task] = set()

    @property
    def has_transport(self) -> bool:
        return self._transport is not None

    @property
    def pending_checks(self) -> int:
        return len(self._background)

    def get_transport(self) -> Transport:
        if self._transport is not None:
            return self._transport

        self._transport = self._transport_factory()
        task = asyncio.get_running_loop().create_task(self._verify(self._transport))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return self._transport

    async def _verify(self, transport: Transport):
        try:
            await transport.verify()
            logger.info("smtp_connection_verified")
        except Exception as e:
            logger.warning("smtp_verification_failed_will_retry_on_send", error=str(e))

    def _log_retry(self, retry_state: RetryCallState):
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("transient_delivery_error_retrying",
                       attempt=retry_state.attempt_number,
                       delay_ms=int(retry_state.next_action.sleep * 1000) if retry_state.next_action else None,
                       code=network_error_code(error) if error else None,
                       response_code=response_code(error) if error else None,
                       error=str(error))

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        transport = self.get_transport()
        result: Optional[DeliveryResult] = None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay_ms / 1000, exp_base=2),
            retry=retry_if_exception(is_transient_error),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await transport.send_mail(message)

        logger.debug("email_sent",
                     message_id=result.message_id,
                     to=message.to,
                     accepted=result.accepted,
                     rejected=result.rejected)
        return result

    async def close_transport(self):
        checks = list(self._background)
        for task in checks:
            task.cancel()
        if checks:
            await asyncio.gather(*checks, return_exceptions=True)

        if self._transport is None:
            return
        transport = self._transport
        self._transport = None
        await transport.close()
        logger.info("smtp_transport_closed")
