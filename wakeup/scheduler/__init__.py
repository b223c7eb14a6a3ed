"""Wakeup scheduling — models, next-run calculation, fan-out execution and history."""

from wakeup.scheduler.engine import WakeupEngine
from wakeup.scheduler.executor import TaskExecutor
from wakeup.scheduler.fanout import FanOutExecutor, FanOutResult
from wakeup.scheduler.history import HistoryLog
from wakeup.scheduler.models import ScheduleModel, Task, TaskDraft
from wakeup.scheduler.recurrence import next_run, next_runs
from wakeup.scheduler.registry import TaskRegistry

__all__ = [
    "ScheduleModel",
    "Task",
    "TaskDraft",
    "TaskRegistry",
    "HistoryLog",
    "FanOutExecutor",
    "FanOutResult",
    "TaskExecutor",
    "WakeupEngine",
    "next_run",
    "next_runs",
]
