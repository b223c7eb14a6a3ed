"""Tests for FanOutExecutor."""

import asyncio
import math

import pytest

from wakeup.scheduler.errors import RemoteCallError, ScheduleValidationError
from wakeup.scheduler.fanout import (
    FanOutExecutor,
    Target,
    build_targets,
    resolve_max_output_tokens,
)
from wakeup.scheduler.models import WakeupReply


class FakeCaller:
    """Records calls; accounts listed in *failing* raise RemoteCallError."""

    def __init__(self, failing: set[str] | None = None, duration_ms: int | None = None) -> None:
        self.failing = failing or set()
        self.duration_ms = duration_ms
        self.calls: list[tuple[str, str, str | None, int]] = []

    async def invoke(self, account_id, model_id, prompt, max_output_tokens) -> WakeupReply:
        self.calls.append((account_id, model_id, prompt, max_output_tokens))
        if account_id in self.failing:
            msg = f"quota exhausted for {account_id}"
            raise RemoteCallError(msg)
        return WakeupReply(reply="ok", duration_ms=self.duration_ms)


async def test_one_failure_does_not_affect_others() -> None:
    caller = FakeCaller(failing={"a2"})
    result = await FanOutExecutor(caller).execute(["a1", "a2"], ["m1"], "ping", 16)

    assert result.succeeded == 1
    assert result.failed == 1
    by_account = {o.target.account_id: o for o in result.outcomes}
    assert by_account["a1"].success is True
    assert by_account["a1"].reply is not None
    assert by_account["a2"].success is False
    assert by_account["a2"].error == "quota exhausted for a2"
    assert sorted(caller.calls) == [("a1", "m1", "ping", 16), ("a2", "m1", "ping", 16)]


async def test_calls_run_concurrently() -> None:
    started = 0
    all_started = asyncio.Event()

    class BarrierCaller:
        async def invoke(self, account_id, model_id, prompt, max_output_tokens) -> WakeupReply:
            nonlocal started
            started += 1
            if started == 4:
                all_started.set()
            # Only completes if every call is in flight at the same time.
            await asyncio.wait_for(all_started.wait(), timeout=2)
            return WakeupReply(reply="ok")

    result = await FanOutExecutor(BarrierCaller()).execute(["a1", "a2"], ["m1", "m2"])
    assert result.succeeded == 4


async def test_matrix_is_accounts_times_models() -> None:
    caller = FakeCaller()
    result = await FanOutExecutor(caller).execute(["a1", "a2"], ["m1", "m2", "m3"])
    assert len(result.outcomes) == 6
    assert {(o.target.account_id, o.target.model_id) for o in result.outcomes} == {
        (a, m) for a in ("a1", "a2") for m in ("m1", "m2", "m3")
    }


@pytest.mark.parametrize(("accounts", "models"), [([], ["m1"]), (["a1"], [])])
async def test_empty_selection_raises_before_any_call(accounts, models) -> None:
    caller = FakeCaller()
    with pytest.raises(ScheduleValidationError):
        await FanOutExecutor(caller).execute(accounts, models)
    assert caller.calls == []


async def test_reported_duration_overrides_measured() -> None:
    result = await FanOutExecutor(FakeCaller(duration_ms=1234)).execute(["a1"], ["m1"])
    assert result.outcomes[0].duration_ms == 1234


async def test_exception_without_message_uses_class_name() -> None:
    class SilentCaller:
        async def invoke(self, *args) -> WakeupReply:
            raise TimeoutError

    result = await FanOutExecutor(SilentCaller()).execute(["a1"], ["m1"])
    assert result.outcomes[0].error == "TimeoutError"


def test_build_targets_dedupes_and_keeps_order() -> None:
    assert build_targets(["a1", "a2", "a1"], ["m1", "m1"]) == [
        Target("a1", "m1"),
        Target("a2", "m1"),
    ]


@pytest.mark.parametrize(
    ("explicit", "fallback", "expected"),
    [
        (64, 32, 64),
        (12.7, 0, 12),
        (None, 32, 32),
        (0, 32, 32),
        (-5, 8, 8),
        (math.inf, 8, 8),
        (math.nan, None, 0),
        (None, -1, 0),
        (None, None, 0),
    ],
)
def test_resolve_max_output_tokens(explicit, fallback, expected) -> None:
    assert resolve_max_output_tokens(explicit, fallback) == expected
