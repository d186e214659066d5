# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from ..errors import StoreUnavailableError
from .base import DbAdapter

MEMORY = ":memory:"


class SqliteAdapter(DbAdapter):
    """SQLite async adapter.

    File databases open a connection per operation, so concurrent sessions
    never share a connection. An in-memory database keeps one shared
    connection (it would vanish otherwise), serialized by a lock.
    """

    def __init__(self, db_path: str, timeout: float = 5.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
            timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = db_path or MEMORY
        self.timeout = timeout
        self._shared: aiosqlite.Connection | None = None
        self._shared_lock = asyncio.Lock()

    async def connect(self) -> None:
        if self.db_path == MEMORY and self._shared is None:
            self._shared = await aiosqlite.connect(MEMORY)

    async def close(self) -> None:
        if self._shared is not None:
            await self._shared.close()
            self._shared = None

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            if self.db_path == MEMORY:
                async with self._shared_lock:
                    await self.connect()
                    yield self._shared
            else:
                async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
                    yield db
        except (aiosqlite.OperationalError, OSError) as exc:
            raise StoreUnavailableError(f"SQLite store unavailable: {exc}") from exc

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with self._connection() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row, strict=True))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with self._connection() as db:
            await db.executescript(script)
            await db.commit()
