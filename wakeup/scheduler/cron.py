"""Minimal crontab evaluator.

Only the minute and hour fields drive the result.  Day-of-month, month and
day-of-week must be present but are ignored, so ``"0 9 * * 1"`` fires every
day at 09:00.

Supported field syntax: ``*``, ``5``, ``1-5``, ``*/15``, ``10-50/10``, ``5/20``
and comma lists of any of those.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from wakeup.scheduler.clock import wall_clock_at
from wakeup.scheduler.errors import CronExpressionError

if TYPE_CHECKING:
    from datetime import datetime

CRON_HORIZON_DAYS = 7
MIN_FIELDS = 5


@dataclass(frozen=True)
class CronSchedule:
    minutes: tuple[int, ...]
    hours: tuple[int, ...]


def _to_int(text: str, field: str) -> int:
    if not text.isdigit():
        msg = f"Invalid cron field {field!r}"
        raise CronExpressionError(msg)
    return int(text)


def _expand_part(part: str, minimum: int, maximum: int) -> range:
    base, has_step, step_text = part.partition("/")
    step = _to_int(step_text, part) if has_step else 1
    if step < 1:
        msg = f"Invalid cron step in {part!r}"
        raise CronExpressionError(msg)

    if base == "*":
        start, end = minimum, maximum
    elif "-" in base:
        low, _, high = base.partition("-")
        start, end = _to_int(low, part), _to_int(high, part)
    else:
        start = _to_int(base, part)
        end = maximum if has_step else start

    if start < minimum or end > maximum or start > end:
        msg = f"Cron field {part!r} out of range {minimum}-{maximum}"
        raise CronExpressionError(msg)
    return range(start, end + 1, step)


def parse_field(field: str, minimum: int, maximum: int) -> tuple[int, ...]:
    """Expand one cron field into its sorted matching values."""
    values: set[int] = set()
    for part in field.split(","):
        if not part:
            msg = f"Empty item in cron field {field!r}"
            raise CronExpressionError(msg)
        values.update(_expand_part(part, minimum, maximum))
    return tuple(sorted(values))


def parse_cron_expression(expression: str) -> CronSchedule:
    """Parse *expression*; raises CronExpressionError when it is unusable."""
    parts = expression.split()
    if len(parts) < MIN_FIELDS:
        msg = f"Cron expression needs {MIN_FIELDS} fields, got {len(parts)}: {expression!r}"
        raise CronExpressionError(msg)
    minute, hour = parts[0], parts[1]
    return CronSchedule(minutes=parse_field(minute, 0, 59), hours=parse_field(hour, 0, 23))


def next_cron_runs(expression: str, now: datetime, count: int) -> list[datetime]:
    """Up to *count* instants after *now* matching *expression* within 7 days.

    Returns an empty list if the expression does not parse.
    """
    try:
        schedule = parse_cron_expression(expression)
    except CronExpressionError:
        return []

    results: list[datetime] = []
    if count <= 0:
        return results
    for day_offset in range(CRON_HORIZON_DAYS):
        for hour in schedule.hours:
            for minute in schedule.minutes:
                candidate = wall_clock_at(now, day_offset, hour, minute)
                if candidate > now:
                    results.append(candidate)
                    if len(results) >= count:
                        return results
    return results
