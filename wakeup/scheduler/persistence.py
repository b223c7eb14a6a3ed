"""Durable key/value persistence for the task set and the history log."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from wakeup.db import get_connection
from wakeup.scheduler.errors import PersistenceError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS kv_store (
    key        TEXT PRIMARY KEY,
    value      BLOB NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class DurableStore(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store, used in tests and as a no-database fallback."""

    def __init__(self, data: dict[str, bytes] | None = None) -> None:
        self.data: dict[str, bytes] = dict(data or {})

    async def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class LibsqlStore:
    """Key/value rows in SQLite / Turso.

    Singleton accessed via ``LibsqlStore.get_instance()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: LibsqlStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get_instance(cls) -> LibsqlStore:
        """Return the shared LibsqlStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    async def _connect(self):  # noqa: ANN202
        db = await get_connection(local_path_override=self._db_path)
        if not self._initialised:
            try:
                await db.execute(_CREATE_TABLE)
                await db.commit()
            except Exception:
                await db.close()
                raise
            self._initialised = True
        return db

    async def get(self, key: str) -> bytes | None:
        async with await self._connect() as db:
            cursor = await db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
        if row is None:
            return None
        value = row[0]
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    async def set(self, key: str, value: bytes) -> None:
        now = datetime.now(UTC).isoformat()
        async with await self._connect() as db:
            await db.execute(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, now),
            )
            await db.commit()

    async def delete(self, key: str) -> None:
        async with await self._connect() as db:
            await db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await db.commit()


class StoreHandle:
    """One logical entity's slot in a DurableStore.

    If *legacy_key* is given, the first read that finds nothing under *key*
    moves the legacy value over and deletes the old key.

    All store failures are re-raised as :class:`PersistenceError`.
    """

    def __init__(self, store: DurableStore, key: str, legacy_key: str | None = None) -> None:
        self._store = store
        self.key = key
        self.legacy_key = legacy_key

    async def read(self) -> bytes | None:
        try:
            value = await self._store.get(self.key)
            if value is not None or not self.legacy_key:
                return value

            legacy = await self._store.get(self.legacy_key)
            if legacy is None:
                return None
            await self._store.set(self.key, legacy)
            await self._store.delete(self.legacy_key)
        except Exception as exc:
            msg = f"Failed to read {self.key!r}: {exc}"
            raise PersistenceError(msg) from exc
        logger.info("Migrated stored value %s -> %s", self.legacy_key, self.key)
        return legacy

    async def write(self, value: bytes) -> None:
        try:
            await self._store.set(self.key, value)
        except Exception as exc:
            msg = f"Failed to write {self.key!r}: {exc}"
            raise PersistenceError(msg) from exc

    async def delete(self) -> None:
        try:
            await self._store.delete(self.key)
        except Exception as exc:
            msg = f"Failed to delete {self.key!r}: {exc}"
            raise PersistenceError(msg) from exc

    async def read_json(self) -> Any | None:
        raw = await self.read()
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            msg = f"Stored value under {self.key!r} is not valid JSON: {exc}"
            raise PersistenceError(msg) from exc


def dump_json(value: Any) -> bytes:
    return json.dumps(value, ensure_ascii=False).encode("utf-8")


class WriteBehind:
    """Best-effort background writer for one StoreHandle.

    Writes are coalesced: only the latest scheduled payload is written, in
    order, by a single drain task.  Failures are logged and dropped.  Outside
    a running event loop the payload waits for :meth:`flush`.
    """

    def __init__(self, handle: StoreHandle) -> None:
        self._handle = handle
        self._latest: bytes | None = None
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._latest is not None or (self._task is not None and not self._task.done())

    def schedule(self, payload: bytes) -> None:
        self._latest = payload
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; deferring write of %s", self._handle.key)
            return
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        while self._latest is not None:
            payload, self._latest = self._latest, None
            try:
                await self._handle.write(payload)
            except PersistenceError:
                logger.exception("Write-behind failed for %s", self._handle.key)

    async def flush(self) -> None:
        """Wait until every scheduled payload has been attempted."""
        if self._task is not None and not self._task.done():
            await self._task
        if self._latest is not None:
            await self._drain()
