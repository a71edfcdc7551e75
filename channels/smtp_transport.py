"""
Pooled SMTP transport on aiosmtplib.

At most `pool_size` connections are open at once; a connection is reused for
up to `max_messages` sends and then recycled. A connection that errors during
a send is discarded rather than returned to the pool, so the next attempt
starts on a fresh one.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from email.message import EmailMessage
from email.utils import make_msgid, parseaddr
from typing import AsyncIterator, Callable, Optional

import aiosmtplib
import structlog

from channels.base import DeliveryResult, OutboundMessage
from config.settings import SmtpConfig

logger = structlog.get_logger().bind(module="email:transport")


class _PooledConnection:
    def __init__(self, client: aiosmtplib.SMTP):
        self.client = client
        self.sent = 0


class SMTPTransport:
    """
    Usage:
        transport = SMTPTransport(settings.smtp)
        result = await transport.send_mail(OutboundMessage(to="a@b.co", subject="Hi", html="<p>Hi</p>"))
        await transport.close()
    """

    def __init__(self, config: SmtpConfig, client_factory: Optional[Callable[[], aiosmtplib.SMTP]] = None):
        self.config = config
        self._client_factory = client_factory or self._new_client
        self._slots = asyncio.Semaphore(max(config.pool_size, 1))
        self._idle: list[_PooledConnection] = []
        self._closed = False
        self._domain = parseaddr(config.from_address)[1].rpartition("@")[2] or None

    def _new_client(self) -> aiosmtplib.SMTP:
        credentials = {}
        if self.config.user and self.config.password:
            credentials = {"username": self.config.user, "password": self.config.password}
        return aiosmtplib.SMTP(
            hostname=self.config.host,
            port=self.config.port,
            use_tls=self.config.secure,
            timeout=self.config.timeout,
            **credentials,
        )

    @property
    def idle_connections(self) -> int:
        return len(self._idle)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[_PooledConnection]:
        async with self._slots:
            conn = self._idle.pop() if self._idle else None
            if conn is None or not conn.client.is_connected:
                conn = _PooledConnection(self._client_factory())
                await conn.client.connect()
                logger.debug("smtp_connection_opened", host=self.config.host, port=self.config.port)

            reusable = False
            try:
                yield conn
                reusable = True
            finally:
                if reusable and not self._closed and conn.sent < self.config.max_messages:
                    self._idle.append(conn)
                else:
                    await self._release(conn)

    async def _release(self, conn: _PooledConnection):
        try:
            await conn.client.quit()
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.debug("smtp_quit_failed", error=str(e))
            conn.client.close()
        logger.debug("smtp_connection_recycled", sent=conn.sent)

    def build_message(self, message: OutboundMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.config.from_address
        msg["To"] = ", ".join(message.recipients)
        msg["Subject"] = message.subject
        msg["Message-ID"] = make_msgid(domain=self._domain)
        if message.reply_to:
            msg["Reply-To"] = message.reply_to
        msg.set_content(message.text or "")
        if message.html:
            msg.add_alternative(message.html, subtype="html")
        return msg

    async def send_mail(self, message: OutboundMessage) -> DeliveryResult:
        msg = self.build_message(message)
        recipients = message.recipients
        async with self._connection() as conn:
            errors, _ = await conn.client.send_message(msg)
            conn.sent += 1

        refused = {addr.lower() for addr in (errors or {})}
        return DeliveryResult(
            message_id=msg["Message-ID"],
            accepted=[r for r in recipients if r.lower() not in refused],
            rejected=[r for r in recipients if r.lower() in refused],
        )

    async def verify(self) -> bool:
        async with self._connection() as conn:
            await conn.client.noop()
        return True

    async def close(self):
        self._closed = True
        idle, self._idle = self._idle, []
        await asyncio.gather(*(self._release(conn) for conn in idle))
