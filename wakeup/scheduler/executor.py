"""TaskExecutor — runs wakeup tasks and test runs and records their outcomes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from wakeup.scheduler.clock import SystemClock, to_epoch_ms
from wakeup.scheduler.errors import ScheduleValidationError
from wakeup.scheduler.fanout import resolve_max_output_tokens
from wakeup.scheduler.models import (
    HistoryRecord,
    TriggerSource,
    TriggerType,
    make_id,
    trigger_source_for,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from wakeup.scheduler.clock import Clock
    from wakeup.scheduler.fanout import FanOutExecutor, FanOutResult
    from wakeup.scheduler.history import HistoryLog
    from wakeup.scheduler.models import WakeupReply
    from wakeup.scheduler.registry import TaskRegistry

logger = logging.getLogger(__name__)

TEST_RUN_NAME = "Test run"

# (task_id, last_run_at, records)
TaskResultListener = Callable[[str, int, list[HistoryRecord]], None]


def format_wakeup_message(model_id: str, reply: WakeupReply, duration_ms: int | None) -> str:
    """Human-readable summary of a successful wakeup for the history log."""
    text = reply.reply.strip() or "(no reply)"
    details: list[str] = []
    if duration_ms is not None:
        details.append(f"{duration_ms} ms")
    if reply.prompt_tokens is not None or reply.total_tokens is not None:
        prompt = reply.prompt_tokens if reply.prompt_tokens is not None else "?"
        completion = reply.completion_tokens if reply.completion_tokens is not None else "?"
        total = reply.total_tokens if reply.total_tokens is not None else "?"
        details.append(f"tokens {prompt}/{completion}/{total}")
    if reply.trace_id:
        details.append(f"trace {reply.trace_id}")
    suffix = f" ({', '.join(details)})" if details else ""
    return f"{model_id}: {text}{suffix}"


def fold_outcomes(
    result: FanOutResult,
    *,
    timestamp: int,
    trigger_type: TriggerType,
    trigger_source: TriggerSource,
    task_name: str | None,
    prompt: str | None,
) -> list[HistoryRecord]:
    """Turn a settled fan-out into one history record per call."""
    records: list[HistoryRecord] = []
    for outcome in result.outcomes:
        if outcome.success and outcome.reply is not None:
            message = format_wakeup_message(
                outcome.target.model_id, outcome.reply, outcome.duration_ms
            )
        else:
            message = outcome.error
        records.append(
            HistoryRecord(
                id=make_id(),
                timestamp=timestamp,
                trigger_type=trigger_type,
                trigger_source=trigger_source,
                task_name=task_name,
                account_id=outcome.target.account_id,
                model_id=outcome.target.model_id,
                prompt=prompt,
                success=outcome.success,
                message=message,
                duration_ms=outcome.duration_ms,
            )
        )
    return records


class TaskExecutor:
    """Executes a task's fan-out and folds the results into history.

    Args:
        fanout: FanOutExecutor that performs the calls.
        registry: TaskRegistry for task lookup and ``lastRunAt`` bookkeeping.
        history: HistoryLog receiving one record per call.
        clock: Source of record timestamps.
        default_prompt: Prompt shown in history when a task has no custom prompt.
    """

    def __init__(
        self,
        fanout: FanOutExecutor,
        registry: TaskRegistry,
        history: HistoryLog,
        clock: Clock | None = None,
        default_prompt: str = "hi",
    ) -> None:
        self._fanout = fanout
        self._registry = registry
        self._history = history
        self._clock = clock or SystemClock()
        self._default_prompt = default_prompt
        self._listeners: list[TaskResultListener] = []

    def subscribe(self, listener: TaskResultListener) -> Callable[[], None]:
        """Be told ``(task_id, last_run_at, records)`` after every task run."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def run_task(
        self,
        task_id: str,
        trigger_type: TriggerType = TriggerType.AUTO,
    ) -> FanOutResult | None:
        """Run one task. Returns None when the task is missing, disabled or unrunnable."""
        task = self._registry.get(task_id)
        if task is None:
            logger.warning("Wakeup task not found: %s", task_id)
            return None
        if trigger_type is TriggerType.AUTO and not task.enabled:
            logger.info("Skipping disabled task: %s (%s)", task.name, task_id)
            return None

        schedule = task.schedule
        logger.info(
            "Running wakeup task: '%s' (%s) mode=%s trigger=%s",
            task.name,
            task_id,
            schedule.mode,
            trigger_type,
        )
        try:
            result = await self._fanout.execute(
                schedule.selected_accounts,
                schedule.selected_models,
                schedule.custom_prompt,
                resolve_max_output_tokens(schedule.max_output_tokens),
            )
        except ScheduleValidationError as exc:
            logger.warning("Cannot run task '%s' (%s): %s", task.name, task_id, exc)
            return None

        timestamp = to_epoch_ms(self._clock.now())
        source = (
            trigger_source_for(schedule)
            if trigger_type is TriggerType.AUTO
            else TriggerSource.MANUAL
        )
        records = fold_outcomes(
            result,
            timestamp=timestamp,
            trigger_type=trigger_type,
            trigger_source=source,
            task_name=task.name,
            prompt=schedule.custom_prompt or self._default_prompt,
        )
        self._history.append(records)
        self._registry.record_run(task_id, timestamp)
        self._notify(task_id, timestamp, records)

        if result.failed:
            logger.warning(
                "Wakeup task '%s' finished with %d failed call(s)", task.name, result.failed
            )
        else:
            logger.info("Wakeup task '%s' finished successfully", task.name)
        return result

    async def run_test(
        self,
        accounts: Sequence[str],
        models: Sequence[str],
        prompt: str | None = None,
        max_output_tokens: float | None = None,
    ) -> FanOutResult:
        """Manual test fan-out outside any task.

        Raises ScheduleValidationError when no account or model is selected.
        """
        custom_prompt = prompt.strip() if prompt and prompt.strip() else None
        fallback_task = self._registry.first_enabled()
        fallback_tokens = fallback_task.schedule.max_output_tokens if fallback_task else 0
        tokens = resolve_max_output_tokens(max_output_tokens, fallback_tokens)

        result = await self._fanout.execute(accounts, models, custom_prompt, tokens)
        records = fold_outcomes(
            result,
            timestamp=to_epoch_ms(self._clock.now()),
            trigger_type=TriggerType.MANUAL,
            trigger_source=TriggerSource.MANUAL,
            task_name=TEST_RUN_NAME,
            prompt=custom_prompt or self._default_prompt,
        )
        self._history.append(records)
        if result.failed:
            logger.warning("Test run finished with %d failed call(s)", result.failed)
        return result

    def _notify(self, task_id: str, last_run_at: int, records: list[HistoryRecord]) -> None:
        for listener in list(self._listeners):
            try:
                listener(task_id, last_run_at, records)
            except Exception:
                logger.exception("Task result listener %r failed", listener)
