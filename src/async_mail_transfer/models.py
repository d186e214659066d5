# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the mail transfer service.

This module defines the records exchanged between the pipeline components,
the persistence layer and the HTTP surface.

Models:
    - Account: Local mail identity resolved from a recipient address
    - MessageRecord: A sent or received message owned by an account
    - Draft: A deferred, unsent composition
    - Domain: Verification record for a registered domain
    - MxRecord, AuthenticationReport: DNS authentication aggregate
    - SendResult: Outcome of an outbound send attempt
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

NO_SUBJECT = "(no subject)"
UNKNOWN_SENDER = "unknown"


class Direction(str, Enum):
    """Direction of a stored message."""

    SENT = "sent"
    RECEIVED = "received"


class SendStatus(str, Enum):
    """Outcome of an outbound send.

    Attributes:
        SENT: The relay accepted the message and a ``sent`` record exists.
        DEFERRED: The relay failed and the composition was kept as a draft.
    """

    SENT = "sent"
    DEFERRED = "deferred"


class Account(BaseModel):
    """Local mail identity.

    Attributes:
        id: Unique account identifier.
        address: Primary address as provisioned.
        user_id: Identifier of the owning user in the identity provider.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    address: str
    user_id: str | None = None
    created_at: str | None = None


class MessageRecord(BaseModel):
    """Stored message, immutable except for ``is_read``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    account_id: str
    from_address: str
    to_address: str
    subject: str = ""
    body: str = ""
    html_body: str | None = None
    direction: Direction
    is_read: bool = False
    created_at: str | None = None

    @field_validator("is_read", mode="before")
    @classmethod
    def coerce_read_flag(cls, v):
        return bool(v)


class MessageStats(BaseModel):
    total: int = 0
    unread: int = 0


class Draft(BaseModel):
    """Deferred composition owned by an account."""

    model_config = ConfigDict(extra="ignore")

    id: str
    account_id: str
    to_address: str | None = None
    subject: str | None = None
    body: str | None = None
    created_at: str | None = None


class Domain(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    domain: str
    verified: bool = False
    created_at: str | None = None

    @field_validator("verified", mode="before")
    @classmethod
    def coerce_verified(cls, v):
        return bool(v)


class MxRecord(BaseModel):
    """Single mail exchanger entry."""

    exchange: str
    priority: int


class AuthenticationReport(BaseModel):
    """Aggregate result of the MX/SPF/DMARC/DKIM lookups for a domain.

    A ``None`` record means the lookup succeeded but nothing qualified. A failed
    lookup leaves the record ``None`` and adds a labeled entry to ``errors``.
    """

    domain: str
    dkim_selector: str = "default"
    mx: Annotated[
        list[MxRecord] | None,
        Field(default=None, description="MX records sorted by priority"),
    ]
    spf: Annotated[str | None, Field(default=None, description="Concatenated v=spf1 TXT value")]
    dmarc: Annotated[str | None, Field(default=None, description="Concatenated v=DMARC1 TXT value")]
    dkim: Annotated[str | None, Field(default=None, description="Concatenated DKIM key TXT value")]
    errors: list[str] = Field(default_factory=list)


class SendResult(BaseModel):
    """Outcome of :meth:`OutboundDispatcher.send`.

    Exactly one of ``message_id`` (status ``sent``) or ``draft_id``
    (status ``deferred``) is set.
    """

    status: SendStatus
    message_id: str | None = None
    relay_message_id: str | None = None
    draft_id: str | None = None
    error: str | None = None

    @property
    def deferred(self) -> bool:
        return self.status is SendStatus.DEFERRED


__all__ = [
    "Account",
    "AuthenticationReport",
    "Direction",
    "Domain",
    "Draft",
    "MessageRecord",
    "MessageStats",
    "MxRecord",
    "NO_SUBJECT",
    "SendResult",
    "SendStatus",
    "UNKNOWN_SENDER",
]
