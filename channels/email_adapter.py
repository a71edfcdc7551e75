"""
Email Service — validated sends on top of the delivery pipeline.

Provides:
- Validation of recipients, subject, body size and reply-to
- Plain-text part derived from the HTML body when absent
- Three calling conventions:
    send()             awaitable, raises on failure (used by queue handlers)
    try_send()         awaitable, logs and returns None on failure
    send_background()  fire-and-forget task, failures are logged
- Template sends for every EmailType, with the same three conventions
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import replace
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel

from channels.base import DeliveryPipeline, DeliveryResult, EmailValidationError, OutboundMessage
from channels.email_templates import render_template
from channels.html_text import html_to_text
from channels.smtp_transport import SMTPTransport
from config.settings import SmtpConfig
from models.schemas import EmailType

logger = structlog.get_logger().bind(module="email:service")

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_SUBJECT_LENGTH = 998
MAX_BODY_LENGTH = 10 * 1024 * 1024
MAX_RECIPIENTS = 50


# ──────────────────────────────────────────────────────────────
#  Validation
# ──────────────────────────────────────────────────────────────

def is_valid_email(email: str) -> bool:
    return bool(EMAIL_REGEX.match(email))


def validate_message(message: OutboundMessage):
    """Raise EmailValidationError naming the first offending field."""
    recipients = message.recipients
    if not recipients:
        raise EmailValidationError("At least one recipient required", "to")
    if len(recipients) > MAX_RECIPIENTS:
        raise EmailValidationError(f"Too many recipients (max {MAX_RECIPIENTS})", "to")
    for email in recipients:
        if not is_valid_email(email):
            raise EmailValidationError(f"Invalid email format: {email}", "to")

    if not message.subject.strip():
        raise EmailValidationError("Subject is required", "subject")
    if len(message.subject) > MAX_SUBJECT_LENGTH:
        raise EmailValidationError(f"Subject too long (max {MAX_SUBJECT_LENGTH})", "subject")

    if not message.html or not message.html.strip():
        raise EmailValidationError("HTML body is required", "html")
    if len(message.html) > MAX_BODY_LENGTH:
        raise EmailValidationError("Body too large (max 10MB)", "html")

    if message.reply_to and not is_valid_email(message.reply_to):
        raise EmailValidationError(f"Invalid reply_to: {message.reply_to}", "reply_to")


# ──────────────────────────────────────────────────────────────
#  Service
# ──────────────────────────────────────────────────────────────

class EmailService:
    """
    Usage:
        service = create_email_service(settings.smtp)
        await service.send_template(EmailType.WELCOME, "ana@acme.io", WelcomeData(...))
        ...
        await service.close()
    """

    def __init__(self, pipeline: DeliveryPipeline):
        self.pipeline = pipeline
        self._background: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._background)

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        validate_message(message)
        if not message.text:
            message = replace(message, text=html_to_text(message.html))
        return await self.pipeline.send(message)

    async def try_send(self, message: OutboundMessage) -> Optional[DeliveryResult]:
        try:
            return await self.send(message)
        except Exception as e:
            logger.error("email_send_failed", to=message.to, subject=message.subject,
                         error=str(e) or type(e).__name__)
            return None

    def send_background(self, message: OutboundMessage) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.try_send(message))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── Templates ─────────────────────────────────────────────

    @staticmethod
    def build_template(
        email_type: Union[EmailType, str],
        to: Union[str, list[str]],
        data: Union[BaseModel, dict[str, Any]],
        org_name: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> OutboundMessage:
        subject, html = render_template(email_type, data, org_name)
        return OutboundMessage(to=to, subject=subject, html=html, reply_to=reply_to)

    async def send_template(self, email_type, to, data, org_name=None, reply_to=None) -> DeliveryResult:
        return await self.send(self.build_template(email_type, to, data, org_name, reply_to))

    async def try_send_template(self, email_type, to, data, org_name=None, reply_to=None) -> Optional[DeliveryResult]:
        try:
            message = self.build_template(email_type, to, data, org_name, reply_to)
        except Exception as e:
            logger.error("email_template_failed", type=str(email_type), to=to, error=str(e))
            return None
        return await self.try_send(message)

    def send_template_background(self, email_type, to, data, org_name=None, reply_to=None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self.try_send_template(email_type, to, data, org_name, reply_to)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── Lifecycle ─────────────────────────────────────────────

    async def drain(self):
        """Wait for background sends started so far."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self):
        await self.drain()
        await self.pipeline.close_transport()


def create_email_service(config: SmtpConfig) -> EmailService:
    """Factory: EmailService over a pooled SMTP transport."""
    pipeline = DeliveryPipeline(
        transport_factory=lambda: SMTPTransport(config),
        max_attempts=config.retry_attempts,
        base_delay_ms=config.retry_base_delay_ms,
    )
    return EmailService(pipeline)
