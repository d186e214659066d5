# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Inbound SMTP listener and delivery.

:class:`InboundServer` accepts TCP connections with ``asyncio.start_server``
and runs one :class:`~async_mail_transfer.smtp_session.SMTPSession` per
connection in its own task. :class:`InboundDelivery` turns a completed
transaction into persisted ``received`` messages:

1. The raw body is parsed once (subject, text, html, From header).
2. The sender is the envelope MAIL FROM, else the From header, else
   ``"unknown"``.
3. Each recipient is resolved and persisted on its own, in declaration
   order. An unknown recipient is dropped and logged; a failure for one
   recipient never prevents delivery to the others.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress

from .errors import InvalidAddressError, MessageParseError, ResolutionUnavailableError
from .logger import get_logger
from .models import UNKNOWN_SENDER, Direction
from .parser import parse_message
from .persistence import MailStore, new_id
from .prometheus import MailMetrics
from .resolver import AccountResolver
from .smtp_session import (
    DEFAULT_MAX_MESSAGE_SIZE,
    DeliveryResult,
    Envelope,
    SessionState,
    SMTPSession,
)

DEFAULT_MAX_LINE_LENGTH = 64 * 1024


class InboundDelivery:
    """Persist completed inbound transactions for every resolvable recipient."""

    def __init__(
        self,
        resolver: AccountResolver,
        store: MailStore,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        self.resolver = resolver
        self.store = store
        self.metrics = metrics or MailMetrics()
        self.logger = logger or get_logger("InboundDelivery")

    async def deliver(self, envelope: Envelope) -> DeliveryResult:
        """Persist one message per resolvable recipient.

        Raises:
            MessageParseError: If the body cannot be parsed. Nothing is
                persisted in that case.
        """
        try:
            parsed = parse_message(envelope.content)
        except MessageParseError:
            self.metrics.inc_inbound_error("parse")
            raise
        sender = envelope.mail_from or parsed.from_address or UNKNOWN_SENDER
        result = DeliveryResult(transaction_id=new_id())
        seen: set[str] = set()

        for rcpt in envelope.rcpt_tos:
            try:
                key = self.resolver.normalise(rcpt)
            except InvalidAddressError:
                result.dropped += 1
                self.metrics.inc_dropped()
                continue
            if key in seen:
                continue
            seen.add(key)

            try:
                account = await self.resolver.resolve(rcpt)
            except ResolutionUnavailableError as exc:
                result.failed += 1
                self.metrics.inc_inbound_error("resolution")
                self.logger.warning("Could not resolve %s: %s", rcpt, exc)
                continue
            if account is None:
                result.dropped += 1
                self.metrics.inc_dropped()
                self.logger.info("Account not found for: %s", rcpt)
                continue

            try:
                await self.store.save_message(
                    new_id(),
                    account.id,
                    sender,
                    rcpt,
                    parsed.subject,
                    parsed.text,
                    parsed.html,
                    Direction.RECEIVED,
                )
            except Exception as exc:
                result.failed += 1
                self.metrics.inc_inbound_error("store")
                self.logger.warning("Failed to store message for %s: %s", rcpt, exc)
                continue
            result.delivered += 1
            self.metrics.inc_received()
            self.logger.info("Email received: %s -> %s", sender, rcpt)

        return result


class InboundServer:
    """Asyncio TCP listener speaking SMTP.

    Attributes:
        host: Bind address.
        port: Configured port. After :meth:`start`, :attr:`bound_port`
            reports the actual one (useful with port 0).
        hostname: Name used in the banner and HELO replies.
    """

    def __init__(
        self,
        delivery: InboundDelivery,
        *,
        host: str = "0.0.0.0",
        port: int = 25,
        hostname: str = "localhost",
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        idle_timeout: float = 300.0,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        self.delivery = delivery
        self.host = host
        self.port = port
        self.hostname = hostname
        self.max_message_size = max_message_size
        self.idle_timeout = idle_timeout
        self.max_line_length = max_line_length
        self.metrics = metrics or delivery.metrics
        self.logger = logger or get_logger("InboundServer")
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(
            self._handle_connection, self.host, self.port, limit=self.max_line_length
        )
        self.logger.info("SMTP server listening on %s:%s", self.host, self.bound_port)

    async def stop(self) -> None:
        """Stop accepting connections and abort sessions in progress."""
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        await server.wait_closed()
        self.logger.info("SMTP server stopped")

    async def _write(self, writer: asyncio.StreamWriter, reply: str) -> None:
        writer.write(reply.encode("utf-8") + b"\r\n")
        await writer.drain()

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        peername = writer.get_extra_info("peername")
        peer = f"{peername[0]}:{peername[1]}" if isinstance(peername, tuple) else str(peername)
        session = SMTPSession(
            self.delivery,
            hostname=self.hostname,
            peer=peer,
            max_message_size=self.max_message_size,
        )
        self.metrics.session_opened()
        self.logger.debug("Session opened from %s", peer)
        try:
            await self._write(writer, session.open())
            while session.state is not SessionState.CLOSED:
                try:
                    line = await asyncio.wait_for(reader.readline(), timeout=self.idle_timeout)
                except asyncio.TimeoutError:
                    self.metrics.inc_inbound_error("timeout")
                    await self._write(writer, f"421 4.4.2 {self.hostname} Error: timeout exceeded")
                    break
                except ValueError:
                    self.metrics.inc_inbound_error("line_too_long")
                    await self._write(writer, "500 5.5.2 Error: line too long")
                    break
                if not line:
                    break
                reply = await session.feed(line)
                if reply is not None:
                    await self._write(writer, reply)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            self.logger.debug("Connection from %s lost: %s", peer, exc)
        except asyncio.CancelledError:
            with suppress(ConnectionError, RuntimeError):
                await self._write(writer, f"421 4.3.2 {self.hostname} Service shutting down")
            raise
        except Exception:
            self.logger.exception("Unexpected error in session from %s", peer)
            self.metrics.inc_inbound_error("session")
        finally:
            session.close()
            self.metrics.session_closed()
            self.logger.debug("Session closed from %s", peer)
            writer.close()
            with suppress(ConnectionError, asyncio.CancelledError):
                await writer.wait_closed()
            if task is not None:
                self._connections.discard(task)
