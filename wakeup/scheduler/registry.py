"""TaskRegistry — owns the wakeup task set and keeps the store in sync."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from pydantic import ValidationError

from wakeup.scheduler.clock import SystemClock, to_epoch_ms
from wakeup.scheduler.cron import parse_cron_expression
from wakeup.scheduler.errors import PersistenceError, ScheduleValidationError
from wakeup.scheduler.models import (
    CrontabTrigger,
    Task,
    TaskDraft,
    clean_stored_task,
    default_schedule,
    make_id,
    normalize_schedule,
    normalize_task,
)
from wakeup.scheduler.persistence import StoreHandle, WriteBehind, dump_json

if TYPE_CHECKING:
    from collections.abc import Sequence

    from wakeup.scheduler.clock import Clock
    from wakeup.scheduler.persistence import DurableStore

logger = logging.getLogger(__name__)

TASKS_KEY = "cockpit.codex.wakeup.tasks"
LEGACY_TASKS_KEY = "agtools.codex.wakeup.tasks"
ENABLED_KEY = "cockpit.codex.wakeup.enabled"
LEGACY_ENABLED_KEY = "agtools.codex.wakeup.enabled"

TaskListener = Callable[[list[Task]], None]


def validate_draft(draft: TaskDraft) -> TaskDraft:
    """Check a draft and return it with a trimmed name and normalized schedule.

    Raises ScheduleValidationError (or CronExpressionError) on the first problem.
    """
    name = draft.name.strip()
    if not name:
        msg = "Task name is required"
        raise ScheduleValidationError(msg)

    schedule = draft.schedule
    if not schedule.selected_accounts:
        msg = "Select at least one account"
        raise ScheduleValidationError(msg)
    if not schedule.selected_models:
        msg = "Select at least one model"
        raise ScheduleValidationError(msg)
    if isinstance(schedule.trigger, CrontabTrigger):
        if not schedule.trigger.expression:
            msg = "Crontab expression is required"
            raise ScheduleValidationError(msg)
        parse_cron_expression(schedule.trigger.expression)

    return draft.model_copy(update={"name": name, "schedule": normalize_schedule(schedule)})


def _repair_selection(selected: list[str], available: Sequence[str]) -> list[str]:
    if not available:
        return selected
    kept = [item for item in selected if item in available]
    return kept or [available[0]]


def repair_selections(
    tasks: Sequence[Task],
    available_accounts: Sequence[str],
    available_models: Sequence[str],
) -> list[Task]:
    """Drop selections that no longer exist, falling back to the first available.

    Tasks whose selections are all still valid are returned unchanged (same
    object).  An empty *available_* list leaves that dimension untouched.
    """
    repaired: list[Task] = []
    for task in tasks:
        schedule = task.schedule
        accounts = _repair_selection(schedule.selected_accounts, available_accounts)
        models = _repair_selection(schedule.selected_models, available_models)
        if accounts == schedule.selected_accounts and models == schedule.selected_models:
            repaired.append(task)
            continue
        new_schedule = schedule.model_copy(
            update={"selected_accounts": accounts, "selected_models": models}
        )
        repaired.append(task.model_copy(update={"schedule": new_schedule}))
    return repaired


class TaskRegistry:
    """In-memory task set with best-effort write-behind persistence.

    Mutations apply immediately and synchronously; the store is updated in the
    background and a failed write never rolls back or raises.  Listeners
    registered with :meth:`subscribe` get the full task list after each change.

    Args:
        tasks_handle: Store slot for the serialized task list.
        enabled_handle: Store slot for the global wakeup on/off switch.
        clock: Source of ``createdAt`` timestamps.
    """

    def __init__(
        self,
        tasks_handle: StoreHandle,
        enabled_handle: StoreHandle,
        clock: Clock | None = None,
    ) -> None:
        self._tasks_handle = tasks_handle
        self._enabled_handle = enabled_handle
        self._tasks_writer = WriteBehind(tasks_handle)
        self._enabled_writer = WriteBehind(enabled_handle)
        self._clock = clock or SystemClock()
        self._tasks: list[Task] = []
        self._wakeup_enabled = False
        self._listeners: list[TaskListener] = []

    @classmethod
    def from_store(cls, store: DurableStore, clock: Clock | None = None) -> TaskRegistry:
        """Build a registry over the default keys of *store*."""
        return cls(
            tasks_handle=StoreHandle(store, TASKS_KEY, legacy_key=LEGACY_TASKS_KEY),
            enabled_handle=StoreHandle(store, ENABLED_KEY, legacy_key=LEGACY_ENABLED_KEY),
            clock=clock,
        )

    # -- Queries ---------------------------------------------------------------

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks)

    @property
    def wakeup_enabled(self) -> bool:
        return self._wakeup_enabled

    def get(self, task_id: str) -> Task | None:
        return next((task for task in self._tasks if task.id == task_id), None)

    def enabled_tasks(self) -> list[Task]:
        return [task for task in self._tasks if task.enabled]

    def first_enabled(self) -> Task | None:
        return next(iter(self.enabled_tasks()), None)

    # -- Observers -------------------------------------------------------------

    def subscribe(self, listener: TaskListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.tasks
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Task listener %r failed", listener)

    # -- Lifecycle -------------------------------------------------------------

    async def load(self, default_task_name: str) -> list[Task]:
        """Restore tasks and the on/off switch from the store.

        An empty store is seeded with one default task.  A store that cannot be
        read leaves the registry empty without writing anything back.
        """
        try:
            raw = await self._tasks_handle.read_json()
        except PersistenceError:
            logger.exception("Failed to load wakeup tasks")
            raw = []

        if raw is None:
            self._tasks = [self._default_task(default_task_name)]
            logger.info("No stored wakeup tasks, created default task")
            self._persist_tasks()
        else:
            self._tasks = self._parse_tasks(raw)

        try:
            enabled = await self._enabled_handle.read_json()
        except PersistenceError:
            logger.exception("Failed to load wakeup switch")
            enabled = None
        self._wakeup_enabled = bool(enabled)

        logger.info(
            "Loaded %d wakeup task(s), wakeup %s",
            len(self._tasks),
            "enabled" if self._wakeup_enabled else "disabled",
        )
        self._notify()
        return self.tasks

    async def flush(self) -> None:
        """Wait for pending background writes."""
        await self._tasks_writer.flush()
        await self._enabled_writer.flush()

    def _default_task(self, name: str) -> Task:
        return Task(
            id=make_id(),
            name=name,
            enabled=True,
            created_at=to_epoch_ms(self._clock.now()),
            schedule=default_schedule(),
        )

    @staticmethod
    def _parse_tasks(raw: object) -> list[Task]:
        if not isinstance(raw, list):
            logger.warning("Stored wakeup tasks are not a list, ignoring")
            return []
        tasks: list[Task] = []
        for item in raw:
            try:
                tasks.append(normalize_task(Task.model_validate(clean_stored_task(item))))
            except ValidationError:
                logger.warning("Skipping invalid stored wakeup task: %r", item, exc_info=True)
        return tasks

    def _persist_tasks(self) -> None:
        payload = [task.model_dump(mode="json", by_alias=True) for task in self._tasks]
        self._tasks_writer.schedule(dump_json(payload))

    def _commit(self, tasks: list[Task]) -> None:
        self._tasks = tasks
        self._persist_tasks()
        self._notify()

    # -- Mutations -------------------------------------------------------------

    def create(self, draft: TaskDraft) -> Task:
        """Validate *draft* and add it as a new task at the front of the list."""
        draft = validate_draft(draft)
        task = Task(
            id=make_id(),
            name=draft.name,
            enabled=draft.enabled,
            created_at=to_epoch_ms(self._clock.now()),
            schedule=draft.schedule,
        )
        self._commit([task, *self._tasks])
        logger.info("Created wakeup task: %s (%s)", task.name, task.id)
        return task

    def update(self, task_id: str, draft: TaskDraft) -> Task:
        """Replace a task's definition, keeping its id, createdAt and lastRunAt."""
        existing = self.get(task_id)
        if existing is None:
            msg = f"Wakeup task not found: {task_id}"
            raise KeyError(msg)
        draft = validate_draft(draft)
        task = existing.model_copy(
            update={"name": draft.name, "enabled": draft.enabled, "schedule": draft.schedule}
        )
        self._commit([task if t.id == task_id else t for t in self._tasks])
        logger.info("Updated wakeup task: %s (%s)", task.name, task.id)
        return task

    def save(self, draft: TaskDraft, task_id: str | None = None) -> Task:
        """Create when *task_id* is None or unknown, update otherwise."""
        if task_id is not None and self.get(task_id) is not None:
            return self.update(task_id, draft)
        return self.create(draft)

    def delete(self, task_id: str) -> bool:
        """Remove a task. Returns True if it existed."""
        remaining = [task for task in self._tasks if task.id != task_id]
        if len(remaining) == len(self._tasks):
            return False
        self._commit(remaining)
        logger.info("Deleted wakeup task: %s", task_id)
        return True

    def _replace(self, task_id: str, **changes: object) -> Task | None:
        existing = self.get(task_id)
        if existing is None:
            logger.warning("Wakeup task not found: %s", task_id)
            return None
        task = existing.model_copy(update=changes)
        self._commit([task if t.id == task_id else t for t in self._tasks])
        return task

    def set_enabled(self, task_id: str, enabled: bool) -> Task | None:
        return self._replace(task_id, enabled=enabled)

    def record_run(self, task_id: str, timestamp: int) -> Task | None:
        """Set ``lastRunAt`` (epoch ms) after a completed run."""
        return self._replace(task_id, last_run_at=timestamp)

    def repair(self, available_accounts: Sequence[str], available_models: Sequence[str]) -> bool:
        """Apply :func:`repair_selections`; returns True if any task changed."""
        repaired = repair_selections(self._tasks, available_accounts, available_models)
        changed = any(new is not old for new, old in zip(repaired, self._tasks, strict=True))
        if changed:
            self._commit(repaired)
            logger.info("Repaired wakeup task selections")
        return changed

    def set_wakeup_enabled(self, enabled: bool) -> None:
        """Flip the global wakeup switch."""
        if enabled == self._wakeup_enabled:
            return
        self._wakeup_enabled = enabled
        self._enabled_writer.schedule(dump_json(enabled))
        logger.info("Wakeup %s", "enabled" if enabled else "disabled")
        self._notify()
