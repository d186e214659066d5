# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Persistence layer for accounts, messages, drafts and domains.

This module provides the MailStore class that handles all database operations
for the mail transfer service, including:

- Account provisioning and address lookup
- Message storage (sent and received), read flag and deletion
- Draft storage for deferred compositions
- Domain registration records and their verification flag

Every write is a single-row statement, so each Message or Draft insert is
atomic on its own and no operation spans several rows.

Example:
    Basic usage of the store::

        store = MailStore("/data/mail_transfer.db")
        await store.init_db()

        await store.add_account({"id": "acc-1", "user_id": "u-1", "address": "alice@example.com"})
        account = await store.find_account_by_address("alice@EXAMPLE.com")

        await store.save_message(
            "msg-1", account["id"], "bob@remote.org", "alice@example.com",
            "Hello", "Hi there", None, "received",
        )
"""

from __future__ import annotations

import uuid
from typing import Any

from .errors import InvalidAddressError, NotFoundError
from .models import Direction
from .sql import DbAdapter, create_adapter

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    address TEXT NOT NULL,
    address_key TEXT NOT NULL UNIQUE,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    from_address TEXT NOT NULL,
    to_address TEXT NOT NULL,
    subject TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    html_body TEXT,
    direction TEXT NOT NULL CHECK (direction IN ('sent', 'received')),
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_messages_account ON messages(account_id, created_at);

CREATE TABLE IF NOT EXISTS drafts (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    to_address TEXT,
    subject TEXT,
    body TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_drafts_account ON drafts(account_id, created_at);

CREATE TABLE IF NOT EXISTS domains (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    domain TEXT NOT NULL,
    verified INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, domain)
);
"""

MESSAGE_COLUMNS = (
    "id, account_id, from_address, to_address, subject, body, html_body, "
    "direction, is_read, created_at"
)


def normalise_address(address: str | None) -> str:
    """Return the lookup key for an address.

    Surrounding whitespace and angle brackets are removed and the domain part
    is lower-cased. The local part is compared exactly.

    Raises:
        InvalidAddressError: If the address is empty.
    """
    value = (address or "").strip()
    if value.startswith("<") and value.endswith(">"):
        value = value[1:-1].strip()
    if not value:
        raise InvalidAddressError("Address is empty")
    local, sep, domain = value.rpartition("@")
    if not sep:
        return value
    return f"{local}@{domain.lower()}"


def new_id() -> str:
    return str(uuid.uuid4())


class MailStore:
    """Async persistence for the mail transfer pipeline.

    Rows are returned as plain dicts; boolean columns are decoded from their
    INTEGER storage.

    Attributes:
        adapter: The SQL adapter all statements go through.
    """

    def __init__(self, db_path: str | None = "/data/mail_transfer.db", adapter: DbAdapter | None = None):
        """Initialize the store.

        Args:
            db_path: SQLite database path or ``sqlite:`` connection string.
                Ignored when ``adapter`` is given.
            adapter: Pre-built adapter, mainly for tests.
        """
        self.adapter = adapter or create_adapter(db_path or ":memory:")

    async def init_db(self) -> None:
        """Create tables and indexes. Idempotent."""
        await self.adapter.connect()
        await self.adapter.execute_script(SCHEMA)

    async def close(self) -> None:
        await self.adapter.close()

    # Accounts -----------------------------------------------------------------
    async def add_account(self, acc: dict[str, Any]) -> str:
        """Provision an account, returning its id.

        Raises:
            InvalidAddressError: If the address is missing.
            sqlite3.IntegrityError: If the address is already provisioned.
        """
        account_id = acc.get("id") or new_id()
        address = (acc.get("address") or "").strip()
        await self.adapter.insert(
            "accounts",
            {
                "id": account_id,
                "user_id": acc.get("user_id"),
                "address": address,
                "address_key": normalise_address(address),
            },
        )
        return account_id

    async def get_account(self, account_id: str) -> dict[str, Any] | None:
        return await self.adapter.fetch_one(
            "SELECT id, user_id, address, created_at FROM accounts WHERE id = :id",
            {"id": account_id},
        )

    async def find_account_by_address(self, address: str) -> dict[str, Any] | None:
        """Return the account whose normalised address matches, or None."""
        return await self.adapter.fetch_one(
            "SELECT id, user_id, address, created_at FROM accounts WHERE address_key = :key",
            {"key": normalise_address(address)},
        )

    async def list_accounts(self, user_id: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT id, user_id, address, created_at FROM accounts"
        params: dict[str, Any] = {}
        if user_id:
            query += " WHERE user_id = :user_id"
            params["user_id"] = user_id
        return await self.adapter.fetch_all(query + " ORDER BY address", params)

    # Messages -----------------------------------------------------------------
    @staticmethod
    def _decode_message(row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is not None:
            row["is_read"] = bool(row.get("is_read"))
        return row

    async def save_message(
        self,
        message_id: str,
        account_id: str,
        from_address: str,
        to_address: str,
        subject: str | None,
        body: str | None,
        html_body: str | None,
        direction: Direction | str,
    ) -> None:
        """Insert a message. Sent messages are stored already read."""
        direction = Direction(direction)
        await self.adapter.insert(
            "messages",
            {
                "id": message_id,
                "account_id": account_id,
                "from_address": from_address,
                "to_address": to_address,
                "subject": subject or "",
                "body": body or "",
                "html_body": html_body or None,
                "direction": direction.value,
                "is_read": 1 if direction is Direction.SENT else 0,
            },
        )

    async def get_message(self, message_id: str) -> dict[str, Any] | None:
        row = await self.adapter.fetch_one(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = :id", {"id": message_id}
        )
        return self._decode_message(row)

    async def mark_read(self, message_id: str) -> bool:
        """Set the read flag. Returns False only when the message does not exist."""
        updated = await self.adapter.execute(
            "UPDATE messages SET is_read = 1 WHERE id = :id", {"id": message_id}
        )
        return updated > 0

    async def delete_message(self, message_id: str) -> None:
        deleted = await self.adapter.execute("DELETE FROM messages WHERE id = :id", {"id": message_id})
        if not deleted:
            raise NotFoundError(f"Message '{message_id}' not found")

    async def list_messages(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        direction: Direction | str | None = None,
    ) -> list[dict[str, Any]]:
        """Return messages for an account, newest first."""
        query = f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE account_id = :account_id"
        params: dict[str, Any] = {
            "account_id": account_id,
            "limit": max(0, int(limit)),
            "offset": max(0, int(offset)),
        }
        if direction is not None:
            query += " AND direction = :direction"
            params["direction"] = Direction(direction).value
        query += " ORDER BY created_at DESC, rowid DESC LIMIT :limit OFFSET :offset"
        rows = await self.adapter.fetch_all(query, params)
        return [self._decode_message(row) for row in rows]

    async def message_stats(self, account_id: str) -> dict[str, int]:
        row = await self.adapter.fetch_one(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END), 0) AS unread
            FROM messages WHERE account_id = :account_id
            """,
            {"account_id": account_id},
        )
        return {"total": int(row["total"]), "unread": int(row["unread"])}

    # Drafts -------------------------------------------------------------------
    async def save_draft(
        self,
        draft_id: str,
        account_id: str,
        to_address: str | None,
        subject: str | None,
        body: str | None,
    ) -> None:
        await self.adapter.insert(
            "drafts",
            {
                "id": draft_id,
                "account_id": account_id,
                "to_address": to_address,
                "subject": subject,
                "body": body,
            },
        )

    async def get_draft(self, draft_id: str) -> dict[str, Any] | None:
        return await self.adapter.fetch_one("SELECT * FROM drafts WHERE id = :id", {"id": draft_id})

    async def list_drafts(self, account_id: str) -> list[dict[str, Any]]:
        return await self.adapter.fetch_all(
            "SELECT * FROM drafts WHERE account_id = :account_id ORDER BY created_at DESC, rowid DESC",
            {"account_id": account_id},
        )

    async def delete_draft(self, draft_id: str) -> None:
        deleted = await self.adapter.execute("DELETE FROM drafts WHERE id = :id", {"id": draft_id})
        if not deleted:
            raise NotFoundError(f"Draft '{draft_id}' not found")

    # Domains ------------------------------------------------------------------
    @staticmethod
    def _decode_domain(row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is not None:
            row["verified"] = bool(row.get("verified"))
        return row

    async def create_domain(self, user_id: str, domain: str) -> str:
        domain_id = new_id()
        await self.adapter.insert(
            "domains",
            {"id": domain_id, "user_id": user_id, "domain": domain, "verified": 0},
        )
        return domain_id

    async def get_domain(self, domain_id: str) -> dict[str, Any] | None:
        row = await self.adapter.fetch_one("SELECT * FROM domains WHERE id = :id", {"id": domain_id})
        return self._decode_domain(row)

    async def list_domains(self, user_id: str) -> list[dict[str, Any]]:
        rows = await self.adapter.fetch_all(
            "SELECT * FROM domains WHERE user_id = :user_id ORDER BY domain", {"user_id": user_id}
        )
        return [self._decode_domain(row) for row in rows]

    async def update_domain_verification(self, domain_id: str, verified: bool) -> None:
        updated = await self.adapter.execute(
            "UPDATE domains SET verified = :verified WHERE id = :id",
            {"id": domain_id, "verified": 1 if verified else 0},
        )
        if not updated:
            raise NotFoundError(f"Domain '{domain_id}' not found")
