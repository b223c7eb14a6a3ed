"""Shared test fixtures."""

from datetime import datetime

import pytest

from wakeup.scheduler.persistence import MemoryStore

# 2025-06-02 is a Monday.
MONDAY_10AM = datetime(2025, 6, 2, 10, 0)


class FixedClock:
    """Clock whose time only moves when a test sets ``current``."""

    def __init__(self, current: datetime) -> None:
        self.current = current

    def now(self) -> datetime:
        return self.current


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(MONDAY_10AM)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("wakeup.config.settings.turso_database_url", "")
