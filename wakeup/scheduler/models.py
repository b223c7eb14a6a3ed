"""Wakeup task data models.

A task's schedule carries exactly one trigger variant, selected by ``mode``:

- ``scheduled``: daily / weekly / interval wall-clock times
- ``crontab``: a 5-field cron expression
- ``quota_reset``: fired by an external quota-reset signal

Payloads written by older versions kept every field flat at the top level and
encoded the mode with a ``crontab`` string and a ``wakeOnReset`` flag.  Those
payloads are upgraded transparently on validation.
"""

from __future__ import annotations

import re
import uuid
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from wakeup.scheduler.errors import ScheduleValidationError

DEFAULT_TIME = "08:00"
DEFAULT_WEEKLY_DAYS = (1, 2, 3, 4, 5)
DEFAULT_INTERVAL_HOURS = 4
DEFAULT_INTERVAL_START = "07:00"
DEFAULT_INTERVAL_END = "22:00"
DEFAULT_TIME_WINDOW_START = "09:00"
DEFAULT_TIME_WINDOW_END = "18:00"
DEFAULT_FALLBACK_TIME = "07:00"
DEFAULT_MODEL = "codex-hourly"

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


class RepeatMode(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    INTERVAL = "interval"


class TriggerMode(StrEnum):
    SCHEDULED = "scheduled"
    CRONTAB = "crontab"
    QUOTA_RESET = "quota_reset"


class TriggerType(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"


class TriggerSource(StrEnum):
    SCHEDULED = "scheduled"
    CRONTAB = "crontab"
    QUOTA_RESET = "quota_reset"
    MANUAL = "manual"


# -- Time strings --------------------------------------------------------------


def normalize_time_input(value: Any) -> str | None:
    """Canonicalize ``"H:MM"`` / ``"HH:MM"`` to zero-padded ``"HH:MM"``.

    Returns None for anything that is not a valid wall-clock time.
    """
    match = _TIME_RE.match(str(value or "").strip())
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def parse_time(value: Any) -> str:
    """Like :func:`normalize_time_input` but raises on invalid input."""
    normalized = normalize_time_input(value)
    if normalized is None:
        msg = f"Invalid time {value!r}, expected HH:MM"
        raise ScheduleValidationError(msg)
    return normalized


def split_time(value: str) -> tuple[int, int]:
    """Return ``(hour, minute)`` for a canonical ``HH:MM`` string."""
    hour, minute = value.split(":")
    return int(hour), int(minute)


def _sorted_unique(values: list) -> list:
    return sorted(set(values))


# -- Trigger variants ----------------------------------------------------------


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ScheduledTrigger(_Model):
    """Wall-clock recurrence: daily times, weekly days × times, or an hourly interval."""

    mode: Literal["scheduled"] = "scheduled"
    repeat_mode: RepeatMode = RepeatMode.DAILY
    daily_times: list[str] = Field(default_factory=lambda: [DEFAULT_TIME])
    weekly_days: list[int] = Field(default_factory=lambda: list(DEFAULT_WEEKLY_DAYS))
    weekly_times: list[str] = Field(default_factory=lambda: [DEFAULT_TIME])
    interval_hours: int = DEFAULT_INTERVAL_HOURS
    interval_start_time: str = DEFAULT_INTERVAL_START
    interval_end_time: str = DEFAULT_INTERVAL_END

    @field_validator("daily_times", "weekly_times")
    @classmethod
    def _check_times(cls, value: list[str]) -> list[str]:
        return [parse_time(item) for item in value]

    @field_validator("weekly_days")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        for day in value:
            if not 0 <= day <= 6:
                msg = f"Invalid weekday {day}, expected 0 (Sunday) to 6 (Saturday)"
                raise ScheduleValidationError(msg)
        return value

    @field_validator("interval_start_time", mode="before")
    @classmethod
    def _check_interval_start(cls, value: Any) -> str:
        return parse_time(value) if value else DEFAULT_INTERVAL_START

    @field_validator("interval_end_time", mode="before")
    @classmethod
    def _check_interval_end(cls, value: Any) -> str:
        return parse_time(value) if value else DEFAULT_INTERVAL_END


class CrontabTrigger(_Model):
    """Minute/hour cron expression (see :mod:`wakeup.scheduler.cron`)."""

    mode: Literal["crontab"] = "crontab"
    expression: str

    @field_validator("expression")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class QuotaResetTrigger(_Model):
    """Fired when the remote quota resets, optionally restricted to a time window.

    A reset outside the window is caught up at the next of ``fallback_times``.
    """

    mode: Literal["quota_reset"] = "quota_reset"
    time_window_enabled: bool = False
    time_window_start: str = DEFAULT_TIME_WINDOW_START
    time_window_end: str = DEFAULT_TIME_WINDOW_END
    fallback_times: list[str] = Field(default_factory=lambda: [DEFAULT_FALLBACK_TIME])

    @field_validator("time_window_start", mode="before")
    @classmethod
    def _check_window_start(cls, value: Any) -> str:
        return parse_time(value) if value else DEFAULT_TIME_WINDOW_START

    @field_validator("time_window_end", mode="before")
    @classmethod
    def _check_window_end(cls, value: Any) -> str:
        return parse_time(value) if value else DEFAULT_TIME_WINDOW_END

    @field_validator("fallback_times")
    @classmethod
    def _check_times(cls, value: list[str]) -> list[str]:
        return [parse_time(item) for item in value]


Trigger = Annotated[
    ScheduledTrigger | CrontabTrigger | QuotaResetTrigger,
    Field(discriminator="mode"),
]

_LEGACY_MODE_KEYS = {"crontab", "wakeOnReset", "wake_on_reset"}


def _field_keys(model: type[BaseModel]) -> set[str]:
    keys: set[str] = set()
    for name, info in model.model_fields.items():
        keys.add(name)
        if info.alias:
            keys.add(info.alias)
    return keys


def _upgrade_legacy_schedule(data: dict[str, Any]) -> dict[str, Any]:
    data = {key: value for key, value in data.items() if value is not None}

    if data.get("wakeOnReset") or data.get("wake_on_reset"):
        variant: type[BaseModel] = QuotaResetTrigger
        trigger: dict[str, Any] = {"mode": TriggerMode.QUOTA_RESET.value}
    elif str(data.get("crontab") or "").strip():
        variant = CrontabTrigger
        trigger = {"mode": TriggerMode.CRONTAB.value, "expression": data["crontab"]}
    else:
        variant = ScheduledTrigger
        trigger = {"mode": TriggerMode.SCHEDULED.value}

    trigger_keys = _field_keys(variant) - {"mode"}
    upgraded: dict[str, Any] = {"trigger": trigger}
    for key, value in data.items():
        if key in _LEGACY_MODE_KEYS:
            continue
        if key in trigger_keys:
            trigger[key] = value
        else:
            upgraded[key] = value
    return upgraded


# -- Schedule & task -----------------------------------------------------------


class ScheduleModel(_Model):
    """One revision of a task's schedule: trigger variant plus target selection.

    Attributes:
        trigger: The single active trigger variant.
        selected_accounts: Account ids to wake.
        selected_models: Capability-window ids; the call matrix is accounts × models.
        custom_prompt: Prompt override (None → caller default).
        max_output_tokens: Token limit; 0 means "let the callee decide".
    """

    trigger: Trigger = Field(default_factory=ScheduledTrigger)
    selected_accounts: list[str] = Field(default_factory=list)
    selected_models: list[str] = Field(default_factory=lambda: [DEFAULT_MODEL])
    custom_prompt: str | None = None
    max_output_tokens: int = 0

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data: Any) -> Any:
        if isinstance(data, dict) and "trigger" not in data:
            return _upgrade_legacy_schedule(data)
        return data

    @field_validator("custom_prompt")
    @classmethod
    def _blank_prompt_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @property
    def mode(self) -> TriggerMode:
        return TriggerMode(self.trigger.mode)


class Task(_Model):
    """A named, persisted wakeup task. Timestamps are epoch milliseconds."""

    id: str
    name: str
    enabled: bool = True
    created_at: int
    last_run_at: int | None = None
    schedule: ScheduleModel = Field(default_factory=ScheduleModel)


class TaskDraft(_Model):
    """What a collaborator submits to create or update a task."""

    name: str
    enabled: bool = True
    schedule: ScheduleModel = Field(default_factory=ScheduleModel)


class HistoryRecord(_Model):
    """One settled wakeup call. Immutable once created."""

    id: str = Field(default_factory=lambda: make_id())
    timestamp: int
    trigger_type: TriggerType
    trigger_source: TriggerSource
    task_name: str | None = None
    account_id: str
    model_id: str
    prompt: str | None = None
    success: bool
    message: str | None = None
    duration_ms: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data: Any) -> Any:
        # Older history files stored accountEmail and duration.
        if isinstance(data, dict):
            data = dict(data)
            if "accountEmail" in data and "accountId" not in data:
                data["accountId"] = data.pop("accountEmail")
            if "duration" in data and "durationMs" not in data:
                data["durationMs"] = data.pop("duration")
        return data


class WakeupReply(_Model):
    """Success payload returned by a RemoteCaller."""

    reply: str = ""
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    trace_id: str | None = None
    response_id: str | None = None
    duration_ms: int | None = None


# -- Helpers -------------------------------------------------------------------


def make_id() -> str:
    """Generate a new task / record id."""
    return uuid.uuid4().hex


def trigger_source_for(schedule: ScheduleModel) -> TriggerSource:
    """Map a schedule's trigger mode to the history trigger source."""
    return TriggerSource(schedule.mode.value)


def normalize_schedule(schedule: ScheduleModel) -> ScheduleModel:
    """Fill empty list fields with defaults and canonicalize ordering.

    Present values are never dropped (duplicates collapse).  Idempotent.
    """
    trigger = schedule.trigger
    if isinstance(trigger, ScheduledTrigger):
        trigger = trigger.model_copy(
            update={
                "daily_times": _sorted_unique(trigger.daily_times) or [DEFAULT_TIME],
                "weekly_days": _sorted_unique(trigger.weekly_days) or list(DEFAULT_WEEKLY_DAYS),
                "weekly_times": _sorted_unique(trigger.weekly_times) or [DEFAULT_TIME],
                "interval_hours": (
                    trigger.interval_hours if trigger.interval_hours > 0 else DEFAULT_INTERVAL_HOURS
                ),
            }
        )
    elif isinstance(trigger, QuotaResetTrigger):
        trigger = trigger.model_copy(
            update={
                "fallback_times": (
                    _sorted_unique(trigger.fallback_times) or [DEFAULT_FALLBACK_TIME]
                ),
            }
        )

    return schedule.model_copy(
        update={
            "trigger": trigger,
            "max_output_tokens": max(schedule.max_output_tokens, 0),
        }
    )


def default_schedule() -> ScheduleModel:
    """Schedule given to the seeded default task: daily at 08:00 on the default model."""
    return normalize_schedule(ScheduleModel())


def normalize_task(task: Task) -> Task:
    return task.model_copy(update={"schedule": normalize_schedule(task.schedule)})


# -- Stored payloads -----------------------------------------------------------

_TIME_LIST_FIELDS = ("daily_times", "weekly_times", "fallback_times")
_TIME_FIELDS = (
    "interval_start_time",
    "interval_end_time",
    "time_window_start",
    "time_window_end",
)


def _is_weekday(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 6


def _clean_time_fields(data: dict[str, Any]) -> dict[str, Any]:
    cleaned = dict(data)
    for name in _TIME_LIST_FIELDS:
        for key in (name, to_camel(name)):
            if isinstance(cleaned.get(key), list):
                times = (normalize_time_input(item) for item in cleaned[key])
                cleaned[key] = [time for time in times if time is not None]
    for name in _TIME_FIELDS:
        for key in (name, to_camel(name)):
            if key in cleaned and normalize_time_input(cleaned[key]) is None:
                del cleaned[key]
    for key in ("weekly_days", "weeklyDays"):
        if isinstance(cleaned.get(key), list):
            cleaned[key] = [day for day in cleaned[key] if _is_weekday(day)]
    return cleaned


def clean_stored_task(data: Any) -> Any:
    """Drop malformed times and weekdays from a stored task payload.

    Stored tasks are repaired rather than rejected: invalid list entries are
    removed (normalization refills empty lists) and invalid single times fall
    back to their defaults.  Drafts keep strict validation.
    """
    if not isinstance(data, dict) or not isinstance(data.get("schedule"), dict):
        return data
    schedule = _clean_time_fields(data["schedule"])
    if isinstance(schedule.get("trigger"), dict):
        schedule["trigger"] = _clean_time_fields(schedule["trigger"])
    return {**data, "schedule": schedule}
