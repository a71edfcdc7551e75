"""Outbound delivery: SMTP transport, retry pipeline, email service and email jobs."""
from channels.base import (
    ChannelError,
    DeliveryPipeline,
    DeliveryResult,
    EmailValidationError,
    OutboundMessage,
    TRANSIENT_NETWORK_CODES,
    is_transient_error,
)
from channels.email_adapter import EmailService, create_email_service, is_valid_email, validate_message
from channels.email_jobs import EMAIL_QUEUE, EmailJobs
from channels.email_templates import TEMPLATES, render_template, wrap_with_layout
from channels.html_text import html_to_text
from channels.smtp_transport import SMTPTransport

__all__ = [
    "ChannelError", "EmailValidationError",
    "OutboundMessage", "DeliveryResult", "DeliveryPipeline",
    "TRANSIENT_NETWORK_CODES", "is_transient_error",
    "SMTPTransport", "html_to_text",
    "TEMPLATES", "render_template", "wrap_with_layout",
    "EmailService", "create_email_service", "is_valid_email", "validate_message",
    "EMAIL_QUEUE", "EmailJobs",
]
