"""FanOutExecutor — one concurrent wakeup call per (account, model) pair."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from wakeup.scheduler.errors import ScheduleValidationError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from wakeup.scheduler.models import WakeupReply

logger = logging.getLogger(__name__)


class RemoteCaller(Protocol):
    async def invoke(
        self,
        account_id: str,
        model_id: str,
        prompt: str | None,
        max_output_tokens: int,
    ) -> WakeupReply: ...


@dataclass(frozen=True)
class Target:
    account_id: str
    model_id: str


@dataclass
class FanOutAction:
    """One in-flight cell of the call matrix."""

    target: Target
    started_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class ActionOutcome:
    target: Target
    success: bool
    duration_ms: int
    reply: WakeupReply | None = None
    error: str | None = None


@dataclass(frozen=True)
class FanOutResult:
    outcomes: list[ActionOutcome]

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)


def build_targets(accounts: Sequence[str], models: Sequence[str]) -> list[Target]:
    """Cartesian product of accounts × models, duplicates removed, order kept."""
    unique_accounts = list(dict.fromkeys(accounts))
    unique_models = list(dict.fromkeys(models))
    return [Target(account, model) for account in unique_accounts for model in unique_models]


def resolve_max_output_tokens(explicit: float | None, fallback: float | None = 0) -> int:
    """Explicit positive value → fallback ≥ 0 → 0 (callee default)."""
    if explicit is not None and math.isfinite(explicit) and explicit > 0:
        return math.floor(explicit)
    if fallback is not None and math.isfinite(fallback) and fallback >= 0:
        return math.floor(fallback)
    return 0


def format_error(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class FanOutExecutor:
    """Issues every call of a fan-out concurrently and waits for all to settle.

    A failing call never cancels its siblings; it only becomes a failed
    :class:`ActionOutcome`.

    Args:
        caller: The RemoteCaller that performs one wakeup.
    """

    def __init__(self, caller: RemoteCaller) -> None:
        self._caller = caller

    async def execute(
        self,
        accounts: Sequence[str],
        models: Sequence[str],
        prompt: str | None = None,
        max_output_tokens: int = 0,
    ) -> FanOutResult:
        if not accounts:
            msg = "Select at least one account"
            raise ScheduleValidationError(msg)
        if not models:
            msg = "Select at least one model"
            raise ScheduleValidationError(msg)

        actions = [FanOutAction(target) for target in build_targets(accounts, models)]
        logger.info(
            "Fan-out: %d call(s) across %d account(s) x %d model(s)",
            len(actions),
            len(set(accounts)),
            len(set(models)),
        )
        outcomes = await asyncio.gather(
            *(self._run(action, prompt, max_output_tokens) for action in actions)
        )
        result = FanOutResult(outcomes=list(outcomes))
        logger.info("Fan-out settled: %d succeeded, %d failed", result.succeeded, result.failed)
        return result

    async def _run(
        self,
        action: FanOutAction,
        prompt: str | None,
        max_output_tokens: int,
    ) -> ActionOutcome:
        target = action.target
        action.started_at = time.monotonic()
        try:
            reply = await self._caller.invoke(
                target.account_id, target.model_id, prompt, max_output_tokens
            )
        except Exception as exc:
            duration_ms = int((time.monotonic() - action.started_at) * 1000)
            logger.warning(
                "Wakeup failed: account=%s model=%s error=%s",
                target.account_id,
                target.model_id,
                format_error(exc),
            )
            return ActionOutcome(
                target=target, success=False, duration_ms=duration_ms, error=format_error(exc)
            )

        duration_ms = int((time.monotonic() - action.started_at) * 1000)
        if reply.duration_ms is not None:
            duration_ms = reply.duration_ms
        return ActionOutcome(target=target, success=True, duration_ms=duration_ms, reply=reply)
