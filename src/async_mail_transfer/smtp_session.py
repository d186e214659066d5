# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-connection SMTP protocol state machine.

An :class:`SMTPSession` is created for every inbound connection and owns all
of that connection's protocol state; sessions share nothing. The object is
transport-agnostic: the server feeds it one received line at a time and
writes back whatever reply it returns.

State transitions::

    IDLE --open()--> GREETED --MAIL--> HAS_SENDER --RCPT--> HAS_RECIPIENT
                        ^                                  |  ^ (RCPT repeats)
                        |                                 DATA
                        |                                  v
                        +---- 250 / 451 / 552 ----- RECEIVING_BODY
                                                           |
                               HAS_RECIPIENT <--- 554 -----+  (parse failure)

    any open state --QUIT--> CLOSED

Policy notes:
    - No sender validation: any MAIL FROM is accepted, including ``<>``.
    - No recipient validation at RCPT time. Unknown recipients are dropped
      silently at delivery so the reply never reveals which addresses exist.
    - AUTH PLAIN and AUTH LOGIN accept any credentials. This is an
      ingestion policy, not a security boundary.

Example:
    Driving a session by hand::

        session = SMTPSession(handler, hostname="mx.example.com")
        session.open()                                  # "220 mx.example.com ESMTP"
        await session.feed(b"MAIL FROM:<bob@remote.org>\\r\\n")
        await session.feed(b"RCPT TO:<alice@example.com>\\r\\n")
        await session.feed(b"DATA\\r\\n")               # "354 ..."
        await session.feed(b"Subject: Hi\\r\\n\\r\\nHello\\r\\n")  # None
        await session.feed(b".\\r\\n")                  # "250 2.0.0 Ok: queued as ..."
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .errors import MessageParseError
from .logger import get_logger

DEFAULT_MAX_MESSAGE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_RECIPIENTS = 100

_ADDRESS_RE = re.compile(r"^\s*<([^>]*)>\s*(.*)$")


class SessionState(str, Enum):
    """Protocol states of one inbound connection."""

    IDLE = "idle"
    GREETED = "greeted"
    HAS_SENDER = "has_sender"
    HAS_RECIPIENT = "has_recipient"
    RECEIVING_BODY = "receiving_body"
    CLOSED = "closed"


@dataclass
class Envelope:
    """One transaction: sender, recipients in declaration order, raw body."""

    mail_from: str | None = None
    rcpt_tos: list[str] = field(default_factory=list)
    content: bytes = b""
    peer: str | None = None
    helo: str | None = None
    auth_user: str | None = None


@dataclass
class DeliveryResult:
    """Per-transaction delivery counts reported by the handler.

    Attributes:
        transaction_id: Identifier echoed in the 250 reply.
        delivered: Recipients for which a message was persisted.
        dropped: Recipients without a local account.
        failed: Recipients whose resolution or persistence failed transiently.
    """

    transaction_id: str
    delivered: int = 0
    dropped: int = 0
    failed: int = 0

    @property
    def retryable(self) -> bool:
        """True when nothing was persisted and at least one recipient failed."""
        return self.failed > 0 and self.delivered == 0


class DeliveryHandler(Protocol):
    async def deliver(self, envelope: Envelope) -> DeliveryResult: ...


def _parse_path(arg: str, keyword: str) -> tuple[str, str] | None:
    """Split ``FROM:<addr> PARAMS`` into ``(addr, params)``; None on bad syntax."""
    head, sep, rest = arg.partition(":")
    if not sep or head.strip().upper() != keyword:
        return None
    match = _ADDRESS_RE.match(rest)
    if match:
        return match.group(1).strip(), match.group(2).strip()
    address, _, params = rest.strip().partition(" ")
    return address.strip(), params.strip()


def _b64decode(value: str) -> str:
    try:
        return base64.b64decode(value.encode("ascii"), validate=False).decode("utf-8", errors="replace")
    except (binascii.Error, UnicodeEncodeError):
        return ""


class SMTPSession:
    """Finite-state object holding one connection's protocol state.

    Attributes:
        state: Current :class:`SessionState`.
        envelope: The transaction being assembled.
        hostname: Name announced in the banner and HELO/EHLO replies.
        peer: Remote peer description, for logging.
        auth_user: Username given to AUTH, if any.
    """

    def __init__(
        self,
        handler: DeliveryHandler,
        *,
        hostname: str = "localhost",
        peer: str | None = None,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        max_recipients: int = DEFAULT_MAX_RECIPIENTS,
        logger=None,
    ):
        self.handler = handler
        self.hostname = hostname
        self.peer = peer
        self.max_message_size = max_message_size
        self.max_recipients = max_recipients
        self.logger = logger or get_logger("SMTPSession")
        self.state = SessionState.IDLE
        self.helo: str | None = None
        self.auth_user: str | None = None
        self.envelope = Envelope(peer=peer)
        self._body: list[bytes] = []
        self._body_size = 0
        self._oversized = False
        self._auth_step: str | None = None
        self._auth_user_pending = ""
        self._commands = {
            "HELO": self._cmd_helo,
            "EHLO": self._cmd_ehlo,
            "MAIL": self._cmd_mail,
            "RCPT": self._cmd_rcpt,
            "DATA": self._cmd_data,
            "RSET": self._cmd_rset,
            "NOOP": self._cmd_noop,
            "VRFY": self._cmd_vrfy,
            "HELP": self._cmd_help,
            "AUTH": self._cmd_auth,
            "STARTTLS": self._cmd_starttls,
            "QUIT": self._cmd_quit,
        }

    # ------------------------------------------------------------ lifecycle
    def open(self) -> str:
        """Accept the connection and return the greeting banner."""
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Session already opened (state={self.state.value})")
        self.state = SessionState.GREETED
        return f"220 {self.hostname} ESMTP"

    def close(self) -> None:
        """Discard in-progress state. Persisted messages are unaffected."""
        self._reset_transaction()
        self.state = SessionState.CLOSED

    def _reset_transaction(self) -> None:
        self.envelope = Envelope(peer=self.peer, helo=self.helo, auth_user=self.auth_user)
        self._clear_body()
        if self.state is not SessionState.CLOSED:
            self.state = SessionState.GREETED

    def _clear_body(self) -> None:
        self._body = []
        self._body_size = 0
        self._oversized = False

    # --------------------------------------------------------------- input
    async def feed(self, line: bytes) -> str | None:
        """Process one received line and return the reply to send, if any.

        While the body is being received no reply is produced until the
        terminating ``.`` line.
        """
        if self.state is SessionState.IDLE:
            raise RuntimeError("Session not opened")
        if self.state is SessionState.CLOSED:
            return None
        if self.state is SessionState.RECEIVING_BODY:
            return await self._feed_body(line)

        text = line.decode("utf-8", errors="replace").rstrip("\r\n")
        if self._auth_step is not None:
            return self._continue_auth(text.strip())

        verb, _, arg = text.strip().partition(" ")
        if not verb:
            return "500 5.5.2 Error: bad syntax"
        command = self._commands.get(verb.upper())
        if command is None:
            return "500 5.5.2 Error: command not recognized"
        return command(arg.strip())

    async def _feed_body(self, line: bytes) -> str | None:
        if line.rstrip(b"\r\n") == b".":
            return await self._complete_body()
        if line.startswith(b"."):
            line = line[1:]
        self._body_size += len(line)
        if self._body_size > self.max_message_size:
            self._oversized = True
            self._body = []
        elif not self._oversized:
            self._body.append(line)
        return None

    async def _complete_body(self) -> str:
        if self._oversized:
            self._reset_transaction()
            return "552 5.3.4 Error: message size exceeds fixed limit"

        self.envelope.content = b"".join(self._body)
        self._clear_body()
        try:
            result = await self.handler.deliver(self.envelope)
        except MessageParseError as exc:
            self.logger.info("Rejected message from %s: %s", self.peer or "-", exc)
            self.envelope.content = b""
            self.state = SessionState.HAS_RECIPIENT
            return "554 5.6.0 Error: failed to parse message"
        except Exception:
            self.logger.exception("Delivery failed for transaction from %s", self.peer or "-")
            self._reset_transaction()
            return "451 4.3.0 Error: local error in processing"

        self._reset_transaction()
        if result.retryable:
            return "451 4.3.0 Error: temporary failure, try again later"
        return f"250 2.0.0 Ok: queued as {result.transaction_id}"

    # ------------------------------------------------------------ commands
    def _cmd_helo(self, arg: str) -> str:
        if not arg:
            return "501 5.5.4 Syntax: HELO hostname"
        self.helo = arg
        self._reset_transaction()
        return f"250 {self.hostname}"

    def _cmd_ehlo(self, arg: str) -> str:
        if not arg:
            return "501 5.5.4 Syntax: EHLO hostname"
        self.helo = arg
        self._reset_transaction()
        return "\r\n".join(
            [
                f"250-{self.hostname}",
                "250-8BITMIME",
                f"250-SIZE {self.max_message_size}",
                "250-AUTH PLAIN LOGIN",
                "250 HELP",
            ]
        )

    def _cmd_mail(self, arg: str) -> str:
        if self.state in (SessionState.HAS_SENDER, SessionState.HAS_RECIPIENT):
            return "503 5.5.1 Error: nested MAIL command"
        parsed = _parse_path(arg, "FROM")
        if parsed is None:
            return "501 5.5.4 Syntax: MAIL FROM:<address>"
        address, params = parsed
        for param in params.split():
            key, _, value = param.partition("=")
            if key.upper() == "SIZE" and value.isdigit() and int(value) > self.max_message_size:
                return "552 5.3.4 Error: message size exceeds fixed limit"
        self.envelope.mail_from = address or None
        self.state = SessionState.HAS_SENDER
        return "250 2.1.0 Ok"

    def _cmd_rcpt(self, arg: str) -> str:
        if self.state not in (SessionState.HAS_SENDER, SessionState.HAS_RECIPIENT):
            return "503 5.5.1 Error: need MAIL command"
        parsed = _parse_path(arg, "TO")
        if parsed is None:
            return "501 5.5.4 Syntax: RCPT TO:<address>"
        address, _params = parsed
        if not address:
            return "501 5.1.3 Error: bad recipient address syntax"
        if len(self.envelope.rcpt_tos) >= self.max_recipients:
            return "452 4.5.3 Error: too many recipients"
        self.envelope.rcpt_tos.append(address)
        self.state = SessionState.HAS_RECIPIENT
        return "250 2.1.5 Ok"

    def _cmd_data(self, arg: str) -> str:
        if arg:
            return "501 5.5.4 Syntax: DATA"
        if self.state is SessionState.HAS_SENDER:
            return "503 5.5.1 Error: need RCPT command"
        if self.state is not SessionState.HAS_RECIPIENT:
            return "503 5.5.1 Error: need MAIL command"
        self._clear_body()
        self.state = SessionState.RECEIVING_BODY
        return "354 End data with <CR><LF>.<CR><LF>"

    def _cmd_rset(self, arg: str) -> str:
        self._reset_transaction()
        return "250 2.0.0 Ok"

    def _cmd_noop(self, arg: str) -> str:
        return "250 2.0.0 Ok"

    def _cmd_vrfy(self, arg: str) -> str:
        return "252 2.0.0 Cannot VRFY user, but will accept message and attempt delivery"

    def _cmd_help(self, arg: str) -> str:
        return "214 2.0.0 Commands: " + " ".join(self._commands)

    def _cmd_starttls(self, arg: str) -> str:
        return "502 5.5.1 Error: STARTTLS not supported"

    def _cmd_quit(self, arg: str) -> str:
        self.close()
        return "221 2.0.0 Bye"

    # ---------------------------------------------------------------- auth
    def _cmd_auth(self, arg: str) -> str:
        if self.auth_user is not None:
            return "503 5.5.1 Error: already authenticated"
        if self.state is not SessionState.GREETED:
            return "503 5.5.1 Error: AUTH not permitted during a mail transaction"
        mechanism, _, initial = arg.partition(" ")
        mechanism = mechanism.upper()
        initial = initial.strip()
        if mechanism == "PLAIN":
            if initial and initial != "=":
                return self._accept_plain(initial)
            self._auth_step = "plain"
            return "334 "
        if mechanism == "LOGIN":
            if initial:
                self._auth_user_pending = _b64decode(initial)
                self._auth_step = "login_password"
                return "334 UGFzc3dvcmQ6"
            self._auth_step = "login_username"
            return "334 VXNlcm5hbWU6"
        return "504 5.5.4 Error: unrecognized authentication type"

    def _continue_auth(self, text: str) -> str:
        step, self._auth_step = self._auth_step, None
        if text == "*":
            return "501 5.7.0 Error: authentication aborted"
        if step == "plain":
            return self._accept_plain(text)
        if step == "login_username":
            self._auth_user_pending = _b64decode(text)
            self._auth_step = "login_password"
            return "334 UGFzc3dvcmQ6"
        return self._accept(self._auth_user_pending)

    def _accept_plain(self, response: str) -> str:
        parts = _b64decode(response).split("\0")
        username = parts[1] if len(parts) > 1 else parts[0]
        return self._accept(username)

    def _accept(self, username: str) -> str:
        self.auth_user = username or "anonymous"
        self.envelope.auth_user = self.auth_user
        self.logger.debug("AUTH accepted for %s from %s", self.auth_user, self.peer or "-")
        return "235 2.7.0 Authentication successful"
