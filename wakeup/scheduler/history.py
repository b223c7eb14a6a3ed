"""HistoryLog — bounded, newest-first record of wakeup outcomes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from pydantic import ValidationError

from wakeup.scheduler.errors import PersistenceError
from wakeup.scheduler.models import HistoryRecord
from wakeup.scheduler.persistence import StoreHandle, WriteBehind, dump_json

if TYPE_CHECKING:
    from collections.abc import Iterable

    from wakeup.scheduler.persistence import DurableStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "cockpit.codex.wakeup.history"
LEGACY_HISTORY_KEY = "agtools.codex.wakeup.history"
MAX_HISTORY_ITEMS = 100

HistoryListener = Callable[[list[HistoryRecord]], None]


def _sort_and_truncate(records: list[HistoryRecord], capacity: int) -> list[HistoryRecord]:
    return sorted(records, key=lambda record: record.timestamp, reverse=True)[:capacity]


def _has_numeric_timestamp(item: object) -> bool:
    if not isinstance(item, dict):
        return False
    timestamp = item.get("timestamp")
    return isinstance(timestamp, int | float) and not isinstance(timestamp, bool)


class HistoryLog:
    """Holds at most *capacity* records sorted by timestamp, newest first.

    Every change is written behind to the store; the in-memory log is what
    callers see.  Listeners get the record list after each change.
    """

    def __init__(self, handle: StoreHandle, capacity: int = MAX_HISTORY_ITEMS) -> None:
        self._handle = handle
        self._writer = WriteBehind(handle)
        self._capacity = capacity
        self._records: list[HistoryRecord] = []
        self._listeners: list[HistoryListener] = []

    @classmethod
    def from_store(cls, store: DurableStore) -> HistoryLog:
        return cls(StoreHandle(store, HISTORY_KEY, legacy_key=LEGACY_HISTORY_KEY))

    @property
    def records(self) -> list[HistoryRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.records
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("History listener %r failed", listener)

    async def load(self) -> list[HistoryRecord]:
        """Restore from the store, dropping entries without a numeric timestamp."""
        try:
            raw = await self._handle.read_json()
        except PersistenceError:
            logger.exception("Failed to load wakeup history")
            raw = None

        records: list[HistoryRecord] = []
        if isinstance(raw, list):
            for item in raw:
                if not _has_numeric_timestamp(item):
                    continue
                try:
                    records.append(HistoryRecord.model_validate(item))
                except ValidationError:
                    logger.warning("Skipping invalid history record: %r", item)

        self._records = _sort_and_truncate(records, self._capacity)
        logger.info("Loaded %d wakeup history record(s)", len(self._records))
        self._notify()
        return self.records

    def append(self, records: Iterable[HistoryRecord]) -> int:
        """Merge *records* (ids already present are skipped). Returns the number added."""
        existing_ids = {record.id for record in self._records}
        new_records = [record for record in records if record.id not in existing_ids]
        if not new_records:
            return 0

        self._records = _sort_and_truncate([*new_records, *self._records], self._capacity)
        self._persist()
        logger.info(
            "History updated: added=%d, total=%d", len(new_records), len(self._records)
        )
        self._notify()
        return len(new_records)

    def clear(self) -> None:
        self._records = []
        self._persist()
        logger.info("History cleared")
        self._notify()

    async def flush(self) -> None:
        await self._writer.flush()

    def _persist(self) -> None:
        payload = [record.model_dump(mode="json", by_alias=True) for record in self._records]
        self._writer.schedule(dump_json(payload))
