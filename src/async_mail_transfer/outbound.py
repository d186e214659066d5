# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound dispatcher: relay a composed message or keep it as a draft.

Every accepted send request leaves exactly one persisted artifact behind:

- relay accepted the message -> a ``sent`` message record;
- relay failed for any reason (connection setup, rejection, timeout) ->
  a draft holding the original recipient, subject and body.

Relay errors are never surfaced as terminal failures; the caller receives a
``deferred`` :class:`~async_mail_transfer.models.SendResult` carrying the
draft id. Validation happens before any network or store side effect.
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

from .errors import InvalidAddressError, InvalidInputError, NotFoundError, SenderNotAuthorizedError
from .logger import get_logger
from .models import Account, Direction, SendResult, SendStatus
from .persistence import MailStore, new_id, normalise_address
from .prometheus import MailMetrics
from .smtp_pool import SMTPPool


def _has_line_break(value: str | None) -> bool:
    return bool(value) and ("\r" in value or "\n" in value)


class OutboundDispatcher:
    """Relay user-composed messages through the pooled relay connection.

    Attributes:
        store: Persistence for sent messages and drafts.
        pool: Per-provider relay connection pool.
        send_timeout: Upper bound in seconds for one relay exchange.
    """

    def __init__(
        self,
        store: MailStore,
        pool: SMTPPool,
        *,
        send_timeout: float = 30.0,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        self.store = store
        self.pool = pool
        self.send_timeout = send_timeout
        self.metrics = metrics or MailMetrics()
        self.logger = logger or get_logger("OutboundDispatcher")

    async def _validate(
        self, account_id: str, to: str, subject: str | None, sender: str | None
    ) -> tuple[Account, str]:
        row = await self.store.get_account(account_id)
        if row is None:
            raise NotFoundError(f"Account '{account_id}' not found")
        account = Account.model_validate(row)
        to = (to or "").strip()
        if "@" not in to or _has_line_break(to):
            raise InvalidAddressError(f"Invalid recipient address: {to!r}")
        if _has_line_break(subject):
            raise InvalidInputError("Subject may not contain line breaks")
        if _has_line_break(sender):
            raise InvalidAddressError(f"Invalid sender address: {sender!r}")
        if not sender:
            return account, account.address
        if normalise_address(sender) != normalise_address(account.address):
            raise SenderNotAuthorizedError(f"Sender {sender} is not authorized for account '{account_id}'")
        return account, sender.strip()

    def build_message(self, sender: str, to: str, subject: str, body: str, html: str | None = None) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=False)
        domain = sender.rpartition("@")[2] or None
        msg["Message-ID"] = make_msgid(domain=domain)
        msg.set_content(body or "")
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    async def send(
        self,
        account_id: str,
        to: str,
        subject: str | None,
        body: str | None,
        html: str | None = None,
        sender: str | None = None,
        provider: str | None = None,
    ) -> SendResult:
        """Relay the message, falling back to a draft on any relay failure.

        Raises:
            NotFoundError: If the account does not exist.
            InvalidAddressError: If ``to`` or ``sender`` is not an address.
            InvalidInputError: If ``subject`` contains a line break or
                ``provider`` is not configured.
            SenderNotAuthorizedError: If ``sender`` is not the account's address.
            StoreUnavailableError: If neither the sent record nor the
                draft could be written.
        """
        account, sender = await self._validate(account_id, to, subject, sender)
        to = to.strip()
        subject = subject or ""
        body = body or ""
        provider = self.pool.resolve_provider(provider)
        msg = self.build_message(sender, to, subject, body, html)

        try:
            async with self.pool.connection(provider) as smtp:
                await asyncio.wait_for(smtp.send_message(msg, sender=sender, recipients=[to]), timeout=self.send_timeout)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            draft_id = new_id()
            await self.store.save_draft(draft_id, account.id, to, subject, body)
            self.metrics.inc_deferred(provider)
            self.logger.warning("Relay via %s failed for %s, saved as draft %s: %s", provider, to, draft_id, error)
            return SendResult(status=SendStatus.DEFERRED, draft_id=draft_id, error=error)

        message_id = new_id()
        await self.store.save_message(message_id, account.id, sender, to, subject, body, html, Direction.SENT)
        self.metrics.inc_sent(provider)
        self.logger.info("Email sent: %s -> %s", sender, to)
        return SendResult(status=SendStatus.SENT, message_id=message_id, relay_message_id=msg["Message-ID"])
