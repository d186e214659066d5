# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Parsing of raw inbound message bodies into structured fields."""

from __future__ import annotations

import email
import email.message
import email.policy
from dataclasses import dataclass

from .errors import MessageParseError
from .logger import get_logger
from .models import NO_SUBJECT

logger = get_logger("MessageParser")


@dataclass(frozen=True)
class ParsedMessage:
    """Fields extracted from a raw RFC 5322 message.

    Attributes:
        subject: Decoded Subject header, ``"(no subject)"`` when absent or blank.
        text: The ``text/plain`` body, empty when the message has none.
        html: The ``text/html`` body, or None.
        from_address: Address from the From header, or None when the header
            is absent, empty or malformed.
    """

    subject: str
    text: str
    html: str | None
    from_address: str | None


def _header_address(msg: email.message.EmailMessage) -> str | None:
    try:
        header = msg.get("From")
        addresses = getattr(header, "addresses", ()) if header is not None else ()
    except Exception as exc:
        logger.debug("Ignoring malformed From header: %s", exc)
        return None
    for address in addresses:
        if address.addr_spec and address.addr_spec != "<>":
            return address.addr_spec
    return None


def parse_message(raw: bytes) -> ParsedMessage:
    """Parse ``raw`` into a :class:`ParsedMessage`.

    A malformed From header is treated as absent; the caller falls back to
    the envelope sender.

    Raises:
        MessageParseError: If the body is empty or its content cannot be
            parsed or decoded (unknown charset, broken transfer encoding,
            malformed headers).
    """
    if not raw or not raw.strip():
        raise MessageParseError("Message has no content")
    try:
        msg = email.message_from_bytes(raw, policy=email.policy.default)
        subject = str(msg.get("Subject", "") or "").strip() or NO_SUBJECT
        text_part = msg.get_body(preferencelist=("plain",))
        html_part = msg.get_body(preferencelist=("html",))
        text = text_part.get_content() if text_part is not None else ""
        html = html_part.get_content() if html_part is not None else None
    except Exception as exc:
        raise MessageParseError(f"Failed to parse message: {exc}") from exc
    return ParsedMessage(subject=subject, text=text or "", html=html or None, from_address=_header_address(msg))
