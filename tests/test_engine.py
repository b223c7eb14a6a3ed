"""Tests for WakeupEngine: job arming and quota-reset handling."""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from wakeup.scheduler.engine import FALLBACK_SUFFIX, WakeupEngine
from wakeup.scheduler.models import (
    CrontabTrigger,
    QuotaResetTrigger,
    ScheduledTrigger,
    ScheduleModel,
    TaskDraft,
    TriggerType,
)
from wakeup.scheduler.registry import TaskRegistry

# Far enough ahead that armed jobs never come due while a test runs.
NOW = datetime(2099, 6, 1, 10, 0)


@pytest.fixture
def future_clock(clock):
    clock.current = NOW
    return clock


@pytest.fixture
def registry(memory_store, future_clock) -> TaskRegistry:
    registry = TaskRegistry.from_store(memory_store, clock=future_clock)
    registry.set_wakeup_enabled(True)
    return registry


@pytest.fixture
def executor() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
async def engine(registry, executor, future_clock):
    engine = WakeupEngine(registry, executor, clock=future_clock)
    yield engine
    await engine.stop()


def _create(registry: TaskRegistry, trigger, accounts=("a1",), name: str = "Task") -> str:
    schedule = ScheduleModel(
        trigger=trigger, selected_accounts=list(accounts), selected_models=["codex-hourly"]
    )
    return registry.create(TaskDraft(name=name, schedule=schedule)).id


def _job_time(engine: WakeupEngine, job_id: str) -> datetime | None:
    job = engine._scheduler.get_job(job_id)
    return job.next_run_time.replace(tzinfo=None) if job else None


# -- Lifecycle -----------------------------------------------------------------


async def test_start_and_stop(engine: WakeupEngine) -> None:
    await engine.start()
    assert engine.running is True
    await engine.stop()
    assert engine.running is False


async def test_start_arms_enabled_tasks(engine: WakeupEngine, registry: TaskRegistry) -> None:
    daily = _create(registry, ScheduledTrigger(daily_times=["12:00"]))
    cron = _create(registry, CrontabTrigger(expression="30 9 * * *"))
    quota = _create(registry, QuotaResetTrigger())
    disabled = _create(registry, ScheduledTrigger(daily_times=["12:00"]))
    registry.set_enabled(disabled, False)

    await engine.start()

    job_ids = {job.id for job in engine._scheduler.get_jobs()}
    assert job_ids == {daily, cron}
    assert quota not in job_ids
    assert _job_time(engine, daily) == datetime(2099, 6, 1, 12, 0)
    assert _job_time(engine, cron) == datetime(2099, 6, 2, 9, 30)


async def test_nothing_armed_when_wakeup_disabled(
    engine: WakeupEngine, registry: TaskRegistry
) -> None:
    _create(registry, ScheduledTrigger(daily_times=["12:00"]))
    registry.set_wakeup_enabled(False)

    await engine.start()
    assert engine._scheduler.get_jobs() == []


async def test_registry_changes_rearm(engine: WakeupEngine, registry: TaskRegistry) -> None:
    await engine.start()
    assert engine._scheduler.get_jobs() == []

    task_id = _create(registry, ScheduledTrigger(daily_times=["12:00"]))
    assert _job_time(engine, task_id) == datetime(2099, 6, 1, 12, 0)

    registry.set_enabled(task_id, False)
    assert engine._scheduler.get_job(task_id) is None

    registry.set_enabled(task_id, True)
    registry.set_wakeup_enabled(False)
    assert engine._scheduler.get_jobs() == []


async def test_next_run_time_and_preview(engine: WakeupEngine, registry: TaskRegistry) -> None:
    task_id = _create(registry, ScheduledTrigger(daily_times=["08:00", "20:00"]))
    await engine.start()

    assert engine.next_run_time(task_id).replace(tzinfo=None) == datetime(2099, 6, 1, 20, 0)
    assert engine.preview(task_id, 3) == [
        datetime(2099, 6, 1, 20, 0),
        datetime(2099, 6, 2, 8, 0),
        datetime(2099, 6, 2, 20, 0),
    ]
    assert engine.preview("missing", 3) == []
    assert engine.next_run_time("missing") is None


async def test_fire_runs_task_and_rearms(
    engine: WakeupEngine, registry: TaskRegistry, executor: AsyncMock
) -> None:
    task_id = _create(registry, ScheduledTrigger(daily_times=["12:00"]))
    await engine.start()
    engine._scheduler.remove_job(task_id)

    await engine._fire(task_id)

    executor.run_task.assert_awaited_once_with(task_id, TriggerType.AUTO)
    assert engine._scheduler.get_job(task_id) is not None


async def test_fire_does_not_rearm_deleted_task(
    engine: WakeupEngine, registry: TaskRegistry, executor: AsyncMock
) -> None:
    task_id = _create(registry, ScheduledTrigger(daily_times=["12:00"]))
    await engine.start()
    registry.delete(task_id)

    await engine._fire(task_id)
    assert engine._scheduler.get_job(task_id) is None


# -- Quota reset ---------------------------------------------------------------


async def test_quota_reset_inside_window_runs_now(
    engine: WakeupEngine, registry: TaskRegistry, executor: AsyncMock
) -> None:
    task_id = _create(
        registry,
        QuotaResetTrigger(time_window_enabled=True, time_window_start="09:00"),
    )
    await engine.start()

    fired = await engine.on_quota_reset("a1", datetime(2099, 6, 1, 9, 30))

    assert fired == [task_id]
    executor.run_task.assert_awaited_once_with(task_id, TriggerType.AUTO)


async def test_quota_reset_outside_window_schedules_fallback(
    engine: WakeupEngine, registry: TaskRegistry, executor: AsyncMock
) -> None:
    task_id = _create(
        registry,
        QuotaResetTrigger(
            time_window_enabled=True,
            time_window_start="09:00",
            time_window_end="18:00",
            fallback_times=["07:00"],
        ),
    )
    await engine.start()

    fired = await engine.on_quota_reset("a1", datetime(2099, 6, 1, 20, 0))

    assert fired == []
    executor.run_task.assert_not_awaited()
    fallback_id = f"{task_id}{FALLBACK_SUFFIX}"
    assert _job_time(engine, fallback_id) == datetime(2099, 6, 2, 7, 0)

    # Unrelated registry changes keep the pending catch-up.
    _create(registry, ScheduledTrigger(daily_times=["12:00"]))
    assert engine._scheduler.get_job(fallback_id) is not None


async def _armed_fallback(engine: WakeupEngine, registry: TaskRegistry) -> str:
    task_id = _create(
        registry,
        QuotaResetTrigger(time_window_enabled=True, fallback_times=["07:00"]),
    )
    await engine.start()
    await engine.on_quota_reset("a1", datetime(2099, 6, 1, 20, 0))
    assert engine._scheduler.get_job(f"{task_id}{FALLBACK_SUFFIX}") is not None
    return task_id


async def test_fallback_dropped_when_task_deleted(
    engine: WakeupEngine, registry: TaskRegistry
) -> None:
    task_id = await _armed_fallback(engine, registry)
    registry.delete(task_id)
    assert engine._scheduler.get_job(f"{task_id}{FALLBACK_SUFFIX}") is None


async def test_fallback_dropped_when_task_disabled(
    engine: WakeupEngine, registry: TaskRegistry
) -> None:
    task_id = await _armed_fallback(engine, registry)
    registry.set_enabled(task_id, False)
    assert engine._scheduler.get_job(f"{task_id}{FALLBACK_SUFFIX}") is None


async def test_fallback_dropped_when_task_leaves_quota_reset_mode(
    engine: WakeupEngine, registry: TaskRegistry
) -> None:
    task_id = await _armed_fallback(engine, registry)
    schedule = ScheduleModel(
        trigger=ScheduledTrigger(daily_times=["12:00"]),
        selected_accounts=["a1"],
        selected_models=["codex-hourly"],
    )
    registry.update(task_id, TaskDraft(name="Task", schedule=schedule))

    assert engine._scheduler.get_job(f"{task_id}{FALLBACK_SUFFIX}") is None
    assert _job_time(engine, task_id) == datetime(2099, 6, 1, 12, 0)


async def test_quota_reset_ignores_other_accounts(
    engine: WakeupEngine, registry: TaskRegistry, executor: AsyncMock
) -> None:
    _create(registry, QuotaResetTrigger(), accounts=("a2",))
    _create(registry, ScheduledTrigger(), accounts=("a1",))
    await engine.start()

    assert await engine.on_quota_reset("a1") == []
    executor.run_task.assert_not_awaited()


async def test_quota_reset_ignored_when_wakeup_disabled(
    engine: WakeupEngine, registry: TaskRegistry, executor: AsyncMock
) -> None:
    _create(registry, QuotaResetTrigger())
    registry.set_wakeup_enabled(False)
    await engine.start()

    assert await engine.on_quota_reset("a1") == []
    executor.run_task.assert_not_awaited()
