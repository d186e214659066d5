# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy shared by the mail transfer pipeline.

Every error carries a machine-readable ``code`` so that the command layer can
report failures as ``{"ok": False, "error": ..., "code": ...}`` and the HTTP
layer can map them to status codes without inspecting messages.
"""

from __future__ import annotations


class MailTransferError(Exception):
    """Base class for all pipeline errors."""

    code = "mail_transfer_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)


class InvalidInputError(MailTransferError, ValueError):
    """Invalid input"""

    code = "invalid_input"


class InvalidAddressError(InvalidInputError):
    """Invalid email address"""


class InvalidDomainError(InvalidInputError):
    """Invalid domain name"""


class SenderNotAuthorizedError(InvalidInputError):
    """Sender address is not authorized for the account"""

    code = "sender_not_authorized"


class NotFoundError(MailTransferError, LookupError):
    """Requested record not found"""

    code = "not_found"


class StoreUnavailableError(MailTransferError):
    """Persistent store unavailable"""

    code = "store_unavailable"


class ResolutionUnavailableError(StoreUnavailableError):
    """Account resolution unavailable"""

    code = "resolution_unavailable"


class MessageParseError(MailTransferError):
    """Failed to parse message"""

    code = "message_parse_error"


__all__ = [
    "InvalidAddressError",
    "InvalidDomainError",
    "InvalidInputError",
    "MailTransferError",
    "MessageParseError",
    "NotFoundError",
    "ResolutionUnavailableError",
    "SenderNotAuthorizedError",
    "StoreUnavailableError",
]
