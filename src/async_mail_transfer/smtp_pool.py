# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lightweight asyncio-friendly SMTP relay connection pool.

The pool keeps at most one live connection per relay provider. A connection
is created lazily on first use and reused across sends while it is younger
than the TTL and still answers NOOP. Each provider slot has its own lock, so
acquisition is scoped to a single send: two concurrent sends through the same
provider are serialized on that connection rather than sharing it.

The pool automatically handles connection lifecycle management including:
- TTL-based connection expiration
- Health checking via SMTP NOOP commands
- Reconnection after a failed send
- Periodic cleanup of idle connections

Example:
    Relaying a message through the default provider::

        pool = SMTPPool({"local": RelayConfig(host="smtp.example.com", port=587)})

        async with pool.connection("local") as smtp:
            await smtp.send_message(message)

        # Periodically clean up stale connections
        await pool.cleanup()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import aiosmtplib

from .errors import InvalidInputError
from .logger import get_logger

DEFAULT_PROVIDER = "local"


@dataclass(frozen=True)
class RelayConfig:
    """Connection parameters of one relay provider."""

    host: str = "localhost"
    port: int = 587
    user: str | None = None
    password: str | None = None
    use_tls: bool = False
    timeout: float = 30.0


@dataclass
class _Slot:
    lock: asyncio.Lock
    smtp: aiosmtplib.SMTP | None = None
    last_used: float = 0.0


class SMTPPool:
    """Per-provider SMTP connection pool.

    Attributes:
        relays: Provider name to :class:`RelayConfig`.
        default_provider: Provider used when a send names none.
        ttl: Maximum age in seconds of an idle pooled connection.
    """

    def __init__(
        self,
        relays: dict[str, RelayConfig] | None = None,
        *,
        default_provider: str = DEFAULT_PROVIDER,
        ttl: int = 300,
        logger=None,
    ):
        self.relays = dict(relays or {default_provider: RelayConfig()})
        self.default_provider = default_provider
        self.ttl = ttl
        self.logger = logger or get_logger("SMTPPool")
        self._slots: dict[str, _Slot] = {}

    def _slot(self, provider: str) -> _Slot:
        slot = self._slots.get(provider)
        if slot is None:
            slot = self._slots[provider] = _Slot(lock=asyncio.Lock())
        return slot

    def resolve_provider(self, provider: str | None) -> str:
        """Return the provider name to use, failing on unknown names."""
        name = provider or self.default_provider
        if name not in self.relays:
            raise InvalidInputError(f"Unknown relay provider '{name}'")
        return name

    async def _connect(self, config: RelayConfig) -> aiosmtplib.SMTP:
        """Open and authenticate a connection.

        TLS behavior based on port and use_tls flag:
        - Port 465 with use_tls=True: Direct TLS (implicit TLS)
        - Other ports with use_tls=True: STARTTLS
        - use_tls=False: Plain SMTP
        """
        if config.use_tls and config.port == 465:
            smtp = aiosmtplib.SMTP(
                hostname=config.host, port=config.port, start_tls=False, use_tls=True, timeout=config.timeout
            )
        elif config.use_tls:
            smtp = aiosmtplib.SMTP(
                hostname=config.host, port=config.port, start_tls=True, use_tls=False, timeout=config.timeout
            )
        else:
            smtp = aiosmtplib.SMTP(
                hostname=config.host, port=config.port, start_tls=False, use_tls=False, timeout=config.timeout
            )

        async def _do_connect():
            await smtp.connect()
            if config.user and config.password:
                await smtp.login(config.user, config.password)

        await asyncio.wait_for(_do_connect(), timeout=config.timeout)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return True when the connection answers NOOP with 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception as exc:
            self.logger.debug("Ignoring error while closing relay connection: %s", exc)

    @asynccontextmanager
    async def connection(self, provider: str | None = None) -> AsyncIterator[aiosmtplib.SMTP]:
        """Acquire the provider's connection for the duration of one send.

        A stale or dead connection is replaced before being handed out. When
        the body of the ``async with`` raises, the connection is discarded and
        the exception propagates.

        Raises:
            InvalidInputError: If the provider is not configured.
            asyncio.TimeoutError: If connecting times out.
            aiosmtplib.SMTPException: If connecting or authenticating fails.
        """
        name = self.resolve_provider(provider)
        slot = self._slot(name)
        async with slot.lock:
            smtp = slot.smtp
            if smtp is not None:
                fresh_enough = (time.time() - slot.last_used) < self.ttl
                if not (fresh_enough and await self._is_alive(smtp)):
                    slot.smtp = None
                    await self._close(smtp)
                    smtp = None
            if smtp is None:
                smtp = await self._connect(self.relays[name])
                slot.smtp = smtp
            try:
                yield smtp
            except BaseException:
                slot.smtp = None
                await self._close(smtp)
                raise
            slot.last_used = time.time()

    async def cleanup(self) -> None:
        """Close connections that exceeded the TTL or fail the health check.

        Slots currently in use by a send are skipped.
        """
        now = time.time()
        for name, slot in list(self._slots.items()):
            if slot.smtp is None or slot.lock.locked():
                continue
            async with slot.lock:
                smtp = slot.smtp
                if smtp is None:
                    continue
                if (now - slot.last_used) > self.ttl or not await self._is_alive(smtp):
                    slot.smtp = None
                    self.logger.debug("Closing idle relay connection for %s", name)
                    await self._close(smtp)

    async def close_all(self) -> None:
        """Close every pooled connection."""
        for slot in list(self._slots.values()):
            async with slot.lock:
                smtp, slot.smtp = slot.smtp, None
            if smtp is not None:
                await self._close(smtp)
