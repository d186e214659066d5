# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration for the mail transfer service.

This module provides the MailTransferCore class, the coordinator that wires
the pipeline components together:

- Inbound SMTP listener, per-connection sessions and delivery to accounts
- Account resolution against the persistent store
- Outbound relay with draft fallback through a pooled connection
- DNS authentication checks for domains
- Message, draft and domain records for the HTTP and CLI surfaces

The core exposes a command-based API (:meth:`MailTransferCore.handle_command`)
shared by the REST layer and the CLI, and runs a background loop that keeps
the relay pool healthy.

Example:
    Running the service::

        from async_mail_transfer.core import MailTransferCore

        core = MailTransferCore(db_path="/data/mail_transfer.db", inbound_port=2525)
        await core.start()
        # SMTP listener is accepting mail

        result = await core.handle_command("checkDomain", {"domain": "example.com"})

        await core.stop()
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import Any

from .config_loader import build_relays
from .dns_auth import DomainAuthenticator, normalise_domain
from .errors import InvalidInputError, MailTransferError, NotFoundError
from .inbound import InboundDelivery, InboundServer
from .logger import get_logger
from .models import Direction
from .outbound import OutboundDispatcher
from .persistence import MailStore, new_id
from .prometheus import MailMetrics
from .resolver import AccountResolver
from .smtp_pool import DEFAULT_PROVIDER, RelayConfig, SMTPPool

DEFAULT_CLEANUP_INTERVAL = 60.0


def _require(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidInputError(f"'{key}' is required")
    return value.strip() if isinstance(value, str) else value


class MailTransferCore:
    """Coordinator of the mail transfer pipeline.

    Attributes:
        store: Persistence for accounts, messages, drafts and domains.
        resolver: Recipient to account lookup.
        pool: Outbound relay connection pool.
        dispatcher: Outbound send with draft fallback.
        authenticator: DNS record checks.
        inbound: SMTP listener, or None when disabled.
        metrics: Prometheus collectors.
    """

    def __init__(
        self,
        db_path: str | None = "/data/mail_transfer.db",
        *,
        relays: dict[str, RelayConfig] | None = None,
        relay_provider: str = DEFAULT_PROVIDER,
        relay_ttl: int = 300,
        relay_timeout: float = 30.0,
        inbound_enabled: bool = True,
        inbound_host: str = "0.0.0.0",
        inbound_port: int = 25,
        inbound_hostname: str = "localhost",
        max_message_size: int = 10 * 1024 * 1024,
        idle_timeout: float = 300.0,
        dkim_selector: str = "default",
        dns_timeout: float = 5.0,
        dns_resolver=None,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        """Build all components. Nothing touches the network or disk yet.

        Args:
            db_path: SQLite database path. Use ":memory:" for tests.
            relays: Provider name to relay configuration.
            relay_provider: Provider used when a send names none.
            inbound_enabled: Whether :meth:`start` opens the SMTP listener.
            dns_resolver: Optional resolver replacing dnspython's, for tests.
        """
        self.logger = logger or get_logger()
        self.metrics = metrics or MailMetrics()
        self.store = MailStore(db_path or ":memory:")
        self.resolver = AccountResolver(self.store)
        self.pool = SMTPPool(
            relays or {relay_provider: RelayConfig(timeout=relay_timeout)},
            default_provider=relay_provider,
            ttl=relay_ttl,
        )
        self.dispatcher = OutboundDispatcher(self.store, self.pool, send_timeout=relay_timeout, metrics=self.metrics)
        self.authenticator = DomainAuthenticator(
            dns_resolver, dkim_selector=dkim_selector, timeout=dns_timeout, metrics=self.metrics
        )
        self.delivery = InboundDelivery(self.resolver, self.store, self.metrics)
        self.inbound: InboundServer | None = None
        if inbound_enabled:
            self.inbound = InboundServer(
                self.delivery,
                host=inbound_host,
                port=inbound_port,
                hostname=inbound_hostname,
                max_message_size=max_message_size,
                idle_timeout=idle_timeout,
                metrics=self.metrics,
            )
        self._cleanup_interval = cleanup_interval
        self._stop = asyncio.Event()
        self._task_cleanup: asyncio.Task | None = None
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: dict[str, Any], **overrides: Any) -> MailTransferCore:
        """Build a core from :func:`~async_mail_transfer.config_loader.load_settings` output."""
        kwargs: dict[str, Any] = dict(
            db_path=settings.get("db_path"),
            relays=build_relays(settings),
            relay_provider=settings.get("relay_provider") or DEFAULT_PROVIDER,
            relay_ttl=int(settings.get("relay_ttl") or 300),
            relay_timeout=float(settings.get("relay_timeout") or 30.0),
            inbound_enabled=bool(settings.get("inbound_enabled", True)),
            inbound_host=settings.get("inbound_host") or "0.0.0.0",
            inbound_port=int(settings.get("inbound_port") or 25),
            inbound_hostname=settings.get("inbound_hostname") or "localhost",
            max_message_size=int(settings.get("max_message_size") or 10 * 1024 * 1024),
            idle_timeout=float(settings.get("idle_timeout") or 300.0),
            dkim_selector=settings.get("dkim_selector") or "default",
            dns_timeout=float(settings.get("dns_timeout") or 5.0),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the database schema. Safe to call more than once."""
        if self._initialized:
            return
        await self.store.init_db()
        self._initialized = True

    async def start(self) -> None:
        """Initialize storage, open the SMTP listener and start pool maintenance."""
        self.logger.debug("Starting MailTransferCore...")
        await self.init()
        self._stop.clear()
        if self.inbound is not None:
            await self.inbound.start()
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop")

    async def stop(self) -> None:
        """Stop the listener and background tasks, then release resources."""
        self._stop.set()
        if self.inbound is not None:
            await self.inbound.stop()
        if self._task_cleanup is not None:
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None
        await self.pool.close_all()
        await self.store.close()
        self._initialized = False

    async def _cleanup_loop(self) -> None:
        """Periodically drop idle or dead relay connections."""
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._cleanup_interval)
            except asyncio.TimeoutError:
                await self.pool.cleanup()

    def status(self) -> dict[str, Any]:
        running = self.inbound is not None and self.inbound.running
        return {
            "ok": True,
            "inbound": running,
            "inbound_port": self.inbound.bound_port if running else None,
            "relay_provider": self.pool.default_provider,
        }

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute a command and return its result.

        Supported commands:
        - ``addAccount``, ``listAccounts``, ``getAccount``: account provisioning
        - ``sendMessage``: relay a message, or keep it as a draft on failure
        - ``listMessages``, ``getMessage``, ``deleteMessage``: stored messages
        - ``saveDraft``, ``listDrafts``, ``deleteDraft``: drafts
        - ``addDomain``, ``listDomains``, ``setDomainVerified``, ``checkDomain``: domains

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: ``{"ok": True, ...}`` on success, otherwise
            ``{"ok": False, "error": ..., "code": ...}``.
        """
        payload = dict(payload or {})
        try:
            return await self._dispatch(cmd, payload)
        except MailTransferError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}
        except sqlite3.IntegrityError as exc:
            return {"ok": False, "error": f"Record already exists: {exc}", "code": InvalidInputError.code}

    async def _dispatch(self, cmd: str, payload: dict[str, Any]) -> dict[str, Any]:
        match cmd:
            case "addAccount":
                _require(payload, "address")
                account_id = await self.store.add_account(payload)
                return {"ok": True, "id": account_id}
            case "listAccounts":
                accounts = await self.store.list_accounts(payload.get("user_id"))
                return {"ok": True, "accounts": accounts}
            case "getAccount":
                account = await self.store.get_account(_require(payload, "id"))
                if account is None:
                    raise NotFoundError(f"Account '{payload['id']}' not found")
                return {"ok": True, **account}
            case "sendMessage":
                return await self._send_message(payload)
            case "listMessages":
                account_id = _require(payload, "account_id")
                direction = payload.get("direction")
                if direction is not None and direction not in {d.value for d in Direction}:
                    raise InvalidInputError(f"Invalid direction: {direction!r}")
                messages = await self.store.list_messages(
                    account_id,
                    limit=payload.get("limit", 50),
                    offset=payload.get("offset", 0),
                    direction=direction,
                )
                stats = await self.store.message_stats(account_id)
                return {"ok": True, "messages": messages, "stats": stats}
            case "getMessage":
                message_id = _require(payload, "id")
                message = await self.store.get_message(message_id)
                if message is None:
                    raise NotFoundError(f"Message '{message_id}' not found")
                if not message["is_read"]:
                    await self.store.mark_read(message_id)
                    message["is_read"] = True
                return {"ok": True, **message}
            case "deleteMessage":
                await self.store.delete_message(_require(payload, "id"))
                return {"ok": True}
            case "saveDraft":
                account_id = _require(payload, "account_id")
                if await self.store.get_account(account_id) is None:
                    raise NotFoundError(f"Account '{account_id}' not found")
                draft_id = new_id()
                await self.store.save_draft(
                    draft_id, account_id, payload.get("to"), payload.get("subject"), payload.get("body")
                )
                return {"ok": True, "id": draft_id}
            case "listDrafts":
                drafts = await self.store.list_drafts(_require(payload, "account_id"))
                return {"ok": True, "drafts": drafts}
            case "deleteDraft":
                await self.store.delete_draft(_require(payload, "id"))
                return {"ok": True}
            case "addDomain":
                user_id = _require(payload, "user_id")
                domain = normalise_domain(payload.get("domain"))
                domain_id = await self.store.create_domain(user_id, domain)
                return {"ok": True, "id": domain_id, "domain": domain}
            case "listDomains":
                domains = await self.store.list_domains(_require(payload, "user_id"))
                return {"ok": True, "domains": domains}
            case "setDomainVerified":
                await self.store.update_domain_verification(_require(payload, "id"), bool(payload.get("verified")))
                return {"ok": True}
            case "checkDomain":
                report = await self.authenticator.check(payload.get("domain"), payload.get("dkim_selector"))
                return {"ok": True, **report.model_dump(mode="json")}
            case _:
                return {"ok": False, "error": "unknown command"}

    async def _send_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self.dispatcher.send(
            _require(payload, "account_id"),
            _require(payload, "to"),
            payload.get("subject"),
            payload.get("body"),
            html=payload.get("html"),
            sender=payload.get("from"),
            provider=payload.get("provider"),
        )
        return {"ok": True, **result.model_dump(mode="json")}
