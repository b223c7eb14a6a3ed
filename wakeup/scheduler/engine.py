"""WakeupEngine — arms APScheduler jobs at each task's next computed run."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from wakeup.scheduler.clock import SystemClock
from wakeup.scheduler.models import QuotaResetTrigger, TriggerType
from wakeup.scheduler.recurrence import fallback_run_at, in_time_window, next_run, next_runs

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from apscheduler.job import Job

    from wakeup.scheduler.clock import Clock
    from wakeup.scheduler.executor import TaskExecutor
    from wakeup.scheduler.models import Task
    from wakeup.scheduler.registry import TaskRegistry

logger = logging.getLogger(__name__)

FALLBACK_SUFFIX = ":fallback"


class WakeupEngine:
    """Keeps one one-shot job per enabled scheduled/crontab task.

    Each job fires at the task's next run instant, runs it through the
    executor and re-arms for the following instant.  Registry changes re-arm
    everything.  Quota-reset tasks are fired from :meth:`on_quota_reset`.

    Args:
        registry: TaskRegistry holding the tasks and the global switch.
        executor: TaskExecutor that runs a task.
        clock: Wall clock used for next-run computation.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        executor: TaskExecutor,
        clock: Clock | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._clock = clock or SystemClock()
        self._scheduler = AsyncIOScheduler()
        self._running = False
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Start the scheduler, arm jobs and follow registry changes."""
        self._scheduler.start()
        self._running = True
        armed = self.reload()
        self._unsubscribe = self._registry.subscribe(lambda _tasks: self.reload())
        logger.info("Wakeup engine started with %d armed task(s)", armed)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Wakeup engine stopped")

    def reload(self) -> int:
        """Drop timed and stale catch-up jobs, then re-arm every enabled task.

        Returns the number armed.
        """
        for job in self._scheduler.get_jobs():
            if not self._keeps_fallback(job.id):
                job.remove()
        if not self._registry.wakeup_enabled:
            return 0

        armed = 0
        for task in self._registry.enabled_tasks():
            if self._arm(task) is not None:
                armed += 1
        logger.debug("Armed %d wakeup task(s)", armed)
        return armed

    # -- Queries ---------------------------------------------------------------

    def preview(self, task_id: str, count: int) -> list[datetime]:
        """The next *count* run instants of a task, for display."""
        task = self._registry.get(task_id)
        if task is None:
            return []
        return next_runs(task.schedule, self._clock.now(), count)

    def next_run_time(self, task_id: str) -> datetime | None:
        job = self._scheduler.get_job(task_id)
        return job.next_run_time if job else None

    # -- Quota reset -----------------------------------------------------------

    async def on_quota_reset(self, account_id: str, reset_at: datetime | None = None) -> list[str]:
        """Handle a quota-reset signal for *account_id*.

        Tasks whose window admits *reset_at* run now; the others are armed at
        their next fallback time.  Returns the ids of the tasks run now.
        """
        if not self._registry.wakeup_enabled:
            logger.info("Ignoring quota reset for %s: wakeup disabled", account_id)
            return []

        reset_at = reset_at or self._clock.now()
        fired: list[str] = []
        for task in self._registry.enabled_tasks():
            trigger = task.schedule.trigger
            if not isinstance(trigger, QuotaResetTrigger):
                continue
            if account_id not in task.schedule.selected_accounts:
                continue

            if in_time_window(trigger, reset_at):
                await self._executor.run_task(task.id, TriggerType.AUTO)
                fired.append(task.id)
                continue

            catch_up = fallback_run_at(trigger, reset_at)
            if catch_up is None:
                continue
            self._scheduler.add_job(
                self._fire,
                trigger=DateTrigger(run_date=catch_up),
                id=f"{task.id}{FALLBACK_SUFFIX}",
                name=f"{task.name} (fallback)",
                args=[task.id],
                misfire_grace_time=None,
                replace_existing=True,
            )
            logger.info(
                "Quota reset for %s outside window of '%s', catching up at %s",
                account_id,
                task.name,
                catch_up.isoformat(),
            )
        return fired

    # -- Internal --------------------------------------------------------------

    def _keeps_fallback(self, job_id: str) -> bool:
        """A catch-up job survives reloads only while its task still waits for quota resets."""
        if not job_id.endswith(FALLBACK_SUFFIX) or not self._registry.wakeup_enabled:
            return False
        task = self._registry.get(job_id.removesuffix(FALLBACK_SUFFIX))
        return (
            task is not None
            and task.enabled
            and isinstance(task.schedule.trigger, QuotaResetTrigger)
        )

    def _arm(self, task: Task) -> Job | None:
        run_at = next_run(task.schedule, self._clock.now())
        if run_at is None:
            return None
        return self._scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_at),
            id=task.id,
            name=task.name,
            args=[task.id],
            misfire_grace_time=None,
            replace_existing=True,
        )

    async def _fire(self, task_id: str) -> None:
        """Job callback. Runs the task, then arms its next instant."""
        await self._executor.run_task(task_id, TriggerType.AUTO)

        task = self._registry.get(task_id)
        if task is None or not task.enabled or not self._registry.wakeup_enabled:
            return
        if self._scheduler.get_job(task_id) is None:
            self._arm(task)
