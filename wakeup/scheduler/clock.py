"""Wall-clock helpers and the injectable Clock."""

from __future__ import annotations

from datetime import datetime, time, timedelta
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Naive local wall clock."""

    def now(self) -> datetime:
        return datetime.now()


def wall_clock_at(now: datetime, day_offset: int, hour: int, minute: int) -> datetime:
    """The instant at ``hour:minute`` on the calendar day ``day_offset`` days after *now*."""
    day = now.date() + timedelta(days=day_offset)
    return datetime.combine(day, time(hour, minute), tzinfo=now.tzinfo)


def to_epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000)
