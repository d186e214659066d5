# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recipient address to local account resolution.

The resolver is a pure, idempotent lookup. Comparison is exact on the full
address after normalisation: the domain part is case-insensitive, the local
part is case-sensitive. ``alice@Example.COM`` resolves to the account
provisioned as ``alice@example.com``; ``Alice@example.com`` does not.

Store failures surface as :class:`ResolutionUnavailableError`, never as a
not-found result, so callers can tell "retry later" from "no such account".
"""

from __future__ import annotations

import asyncio

from .errors import ResolutionUnavailableError, StoreUnavailableError
from .logger import get_logger
from .models import Account
from .persistence import MailStore, normalise_address


class AccountResolver:
    """Map recipient addresses to :class:`Account` records.

    Attributes:
        store: The persistence layer queried for accounts.
        timeout: Upper bound in seconds for a single lookup.
    """

    def __init__(self, store: MailStore, *, timeout: float = 10.0, logger=None):
        self.store = store
        self.timeout = timeout
        self.logger = logger or get_logger("AccountResolver")

    @staticmethod
    def normalise(address: str) -> str:
        """Return the comparison key used for ``address``."""
        return normalise_address(address)

    async def resolve(self, address: str) -> Account | None:
        """Return the account owning ``address`` or None when there is none.

        Raises:
            InvalidAddressError: If the address is empty.
            ResolutionUnavailableError: If the store failed or timed out.
        """
        key = self.normalise(address)
        try:
            row = await asyncio.wait_for(self.store.find_account_by_address(key), timeout=self.timeout)
        except StoreUnavailableError as exc:
            raise ResolutionUnavailableError(f"Cannot resolve {key}: {exc}") from exc
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise ResolutionUnavailableError(f"Cannot resolve {key}: lookup timed out") from exc
        if row is None:
            self.logger.debug("No account for %s", key)
            return None
        return Account.model_validate(row)
