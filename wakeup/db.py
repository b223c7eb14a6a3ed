"""Async access to the libsql database that backs the durable key/value store.

The ``libsql`` driver is synchronous, so every call is pushed onto a worker
thread with ``asyncio.to_thread()``.  The connection target comes from settings:

- ``TURSO_DATABASE_URL`` + ``TURSO_AUTH_TOKEN`` → remote Turso database
- otherwise a local SQLite file at ``database_path``

Tests pass ``local_path_override`` to get an isolated file.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import libsql

from wakeup.config import settings

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType


class _AsyncCursor:
    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def fetchone(self) -> tuple | None:
        return await asyncio.to_thread(self._cursor.fetchone)


class _AsyncConnection:
    """Awaitable facade over a libsql connection; usable as ``async with``."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    async def __aenter__(self) -> _AsyncConnection:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def execute(self, sql: str, params: tuple = ()) -> _AsyncCursor:
        cursor = await asyncio.to_thread(self._conn.execute, sql, params)
        return _AsyncCursor(cursor)

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


def _open_local(path: str) -> Any:
    conn = libsql.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection(local_path_override: Path | None = None) -> _AsyncConnection:
    """Open a connection: explicit local path → Turso → configured local file."""
    if local_path_override is not None:
        path = local_path_override
    elif settings.turso_database_url:
        conn = await asyncio.to_thread(
            libsql.connect,
            database=settings.turso_database_url,
            auth_token=settings.turso_auth_token,
        )
        return _AsyncConnection(conn)
    else:
        path = settings.database_path

    path.parent.mkdir(parents=True, exist_ok=True)
    conn = await asyncio.to_thread(_open_local, str(path))
    return _AsyncConnection(conn)
