"""Wakeup scheduler entry point."""

import asyncio
import logging

from wakeup.config import settings
from wakeup.scheduler.caller import HttpRemoteCaller
from wakeup.scheduler.engine import WakeupEngine
from wakeup.scheduler.executor import TaskExecutor
from wakeup.scheduler.fanout import FanOutExecutor
from wakeup.scheduler.history import HistoryLog
from wakeup.scheduler.persistence import LibsqlStore
from wakeup.scheduler.registry import TaskRegistry

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


async def run() -> None:
    """Load state, start the engine and wait until cancelled."""
    store = LibsqlStore.get_instance()
    registry = TaskRegistry.from_store(store)
    history = HistoryLog.from_store(store)
    await registry.load(settings.default_task_name)
    await history.load()

    accounts = settings.get_wakeup_accounts()
    if not accounts:
        logger.warning("WAKEUP_ACCOUNTS is empty, selections are left as stored")
    registry.repair(accounts, settings.get_wakeup_models())

    executor = TaskExecutor(
        fanout=FanOutExecutor(HttpRemoteCaller()),
        registry=registry,
        history=history,
        default_prompt=settings.default_prompt,
    )
    engine = WakeupEngine(registry=registry, executor=executor)
    await engine.start()

    for task in registry.enabled_tasks():
        runs = engine.preview(task.id, settings.next_run_preview_count)
        logger.info(
            "Task '%s' (%s): next runs %s",
            task.name,
            task.schedule.mode,
            ", ".join(run.strftime("%a %H:%M") for run in runs) or "-",
        )

    try:
        await asyncio.Event().wait()
    finally:
        await engine.stop()
        await registry.flush()
        await history.flush()


def main() -> None:
    """Run the wakeup scheduler until interrupted."""
    logger.info("Starting wakeup scheduler (service=%s)", settings.wakeup_service_url)
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
