"""Next-run calculation for every trigger mode."""

from __future__ import annotations

from datetime import datetime, time
from typing import TYPE_CHECKING

from wakeup.scheduler.clock import wall_clock_at
from wakeup.scheduler.cron import next_cron_runs
from wakeup.scheduler.models import (
    DEFAULT_INTERVAL_HOURS,
    CrontabTrigger,
    QuotaResetTrigger,
    RepeatMode,
    ScheduledTrigger,
    split_time,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

    from wakeup.scheduler.models import ScheduleModel

DAILY_HORIZON_DAYS = 7
WEEKLY_HORIZON_DAYS = 14
INTERVAL_HORIZON_DAYS = 7


def _daily_candidates(trigger: ScheduledTrigger, now: datetime) -> Iterator[datetime]:
    times = [split_time(t) for t in sorted(set(trigger.daily_times))]
    for day_offset in range(DAILY_HORIZON_DAYS):
        for hour, minute in times:
            yield wall_clock_at(now, day_offset, hour, minute)


def _weekly_candidates(trigger: ScheduledTrigger, now: datetime) -> Iterator[datetime]:
    times = [split_time(t) for t in sorted(set(trigger.weekly_times))]
    days = set(trigger.weekly_days)
    for day_offset in range(WEEKLY_HORIZON_DAYS):
        day = wall_clock_at(now, day_offset, 0, 0)
        # 0 = Sunday
        if (day.weekday() + 1) % 7 not in days:
            continue
        for hour, minute in times:
            yield day.replace(hour=hour, minute=minute)


def _interval_candidates(trigger: ScheduledTrigger, now: datetime) -> Iterator[datetime]:
    start_hour, start_minute = split_time(trigger.interval_start_time)
    end_hour, _ = split_time(trigger.interval_end_time)
    step = trigger.interval_hours if trigger.interval_hours > 0 else DEFAULT_INTERVAL_HOURS
    for day_offset in range(INTERVAL_HORIZON_DAYS):
        for hour in range(start_hour, end_hour + 1, step):
            yield wall_clock_at(now, day_offset, hour, start_minute)


_CANDIDATES = {
    RepeatMode.DAILY: _daily_candidates,
    RepeatMode.WEEKLY: _weekly_candidates,
    RepeatMode.INTERVAL: _interval_candidates,
}


def scheduled_runs(trigger: ScheduledTrigger, now: datetime, count: int) -> list[datetime]:
    """Up to *count* instants strictly after *now*, ascending."""
    results: list[datetime] = []
    if count <= 0:
        return results
    for candidate in _CANDIDATES[trigger.repeat_mode](trigger, now):
        if candidate > now:
            results.append(candidate)
            if len(results) >= count:
                break
    return results


def next_runs(schedule: ScheduleModel, now: datetime, count: int) -> list[datetime]:
    """Future run instants for *schedule*; quota-reset tasks have none."""
    trigger = schedule.trigger
    if isinstance(trigger, CrontabTrigger):
        return next_cron_runs(trigger.expression, now, count)
    if isinstance(trigger, QuotaResetTrigger):
        return []
    return scheduled_runs(trigger, now, count)


def next_run(schedule: ScheduleModel, now: datetime) -> datetime | None:
    runs = next_runs(schedule, now, 1)
    return runs[0] if runs else None


# -- Quota reset ---------------------------------------------------------------


def _as_time(value: str) -> time:
    hour, minute = split_time(value)
    return time(hour, minute)


def in_time_window(trigger: QuotaResetTrigger, moment: datetime) -> bool:
    """Whether *moment* may fire a quota-reset task. Windows may wrap midnight."""
    if not trigger.time_window_enabled:
        return True
    start = _as_time(trigger.time_window_start)
    end = _as_time(trigger.time_window_end)
    current = moment.time().replace(second=0, microsecond=0)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def fallback_run_at(trigger: QuotaResetTrigger, reset_at: datetime) -> datetime | None:
    """Earliest fallback time strictly after *reset_at* (today or tomorrow)."""
    times = [split_time(t) for t in sorted(set(trigger.fallback_times))]
    for day_offset in (0, 1):
        for hour, minute in times:
            candidate = wall_clock_at(reset_at, day_offset, hour, minute)
            if candidate > reset_at:
                return candidate
    return None
