# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Minimal async SQL layer with adapter pattern.

Usage:
    adapter = create_adapter("/data/mail.db")  # SQLite (path)
    adapter = create_adapter("sqlite::memory:")  # in-memory SQLite

    await adapter.connect()
    row = await adapter.fetch_one(
        "SELECT * FROM accounts WHERE address_key = :key",
        {"key": "alice@example.com"}
    )
    await adapter.close()
"""

from .base import DbAdapter
from .sqlite import SqliteAdapter

__all__ = [
    "DbAdapter",
    "SqliteAdapter",
    "create_adapter",
]


def create_adapter(connection_string: str) -> DbAdapter:
    """Create database adapter from connection string.

    Connection string formats:
        - "sqlite:/path/to/db.sqlite", "/path/to/db.sqlite" or a relative path
        - "sqlite::memory:" or ":memory:" for in-memory SQLite

    Raises:
        ValueError: If the connection string names an unsupported backend.
    """
    if not connection_string or connection_string == ":memory:":
        return SqliteAdapter(":memory:")

    if ":" not in connection_string or connection_string.startswith("/"):
        return SqliteAdapter(connection_string)

    db_type, connection_info = connection_string.split(":", 1)
    if db_type.lower() == "sqlite":
        return SqliteAdapter(connection_info)

    raise ValueError(
        f"Unknown database type: '{db_type}'. "
        "Supported: sqlite"
    )
