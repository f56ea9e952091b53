from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from fakes import make_advisory

from treasurybot.domain.models import ExecutionResult, SchedulerTrigger
from treasurybot.services.scheduler import (
    RUN_WITH_ERRORS_MESSAGE,
    ExecutionScheduler,
    SchedulerConflictError,
)


class _Accounts:
    def __init__(self, accounts: list[str]) -> None:
        self.accounts = accounts

    async def list_accounts(self) -> list[str]:
        return list(self.accounts)


class _Executor:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.seen: list[str] = []

    async def execute(self, request) -> ExecutionResult:
        self.seen.append(request.account)
        if request.account in self.failing:
            raise RuntimeError(f"portfolio unavailable for {request.account}")
        return ExecutionResult(
            account=request.account,
            delegate="0xdelegate",
            generated_at=datetime.now(UTC),
            summary="ok",
            total_executed_usd=Decimal("10.00"),
            remaining_daily_limit_usd=Decimal("90.00"),
            actions=(),
            transactions=(),
            advisory=make_advisory(),
        )


def _scheduler(accounts: list[str], executor: _Executor | None = None) -> ExecutionScheduler:
    return ExecutionScheduler(
        executor=executor or _Executor(),
        accounts=_Accounts(accounts),
        interval_ms=15_000,
    )


def test_manual_trigger_conflicts_with_running_iteration() -> None:
    scheduler = _scheduler(["0xa"])
    scheduler._running = True

    with pytest.raises(SchedulerConflictError, match="already running"):
        asyncio.run(scheduler.run_once(SchedulerTrigger.MANUAL))


def test_timer_tick_is_skipped_while_running() -> None:
    executor = _Executor()
    scheduler = _scheduler(["0xa"], executor)
    scheduler._running = True

    assert asyncio.run(scheduler.run_once(SchedulerTrigger.TIMER)) is None
    assert executor.seen == []


def test_run_once_processes_every_account() -> None:
    scheduler = _scheduler(["0xa", "0xb"])

    summary = asyncio.run(scheduler.run_once())

    assert summary is not None
    assert summary.source is SchedulerTrigger.MANUAL
    assert summary.processed_accounts == 2
    assert summary.success_count == 2
    assert summary.results[0].executed_usd == Decimal("10.00")

    state = scheduler.status()
    assert state.running is False
    assert state.last_error is None
    assert state.last_summary is summary
    assert state.last_run_at is not None


def test_account_failures_are_counted_not_raised() -> None:
    executor = _Executor(failing={"0xb"})
    scheduler = _scheduler(["0xa", "0xb", "0xc"], executor)

    summary = asyncio.run(scheduler.run_once())

    assert executor.seen == ["0xa", "0xb", "0xc"]
    assert summary.error_count == 1
    assert summary.success_count == 2
    assert summary.results[1].status == "error"
    assert summary.results[1].error == "portfolio unavailable for 0xb"
    assert scheduler.status().last_error == RUN_WITH_ERRORS_MESSAGE


def test_directory_failure_propagates_and_releases_flag() -> None:
    class _BrokenAccounts:
        async def list_accounts(self) -> list[str]:
            raise ConnectionError("directory offline")

    scheduler = ExecutionScheduler(executor=_Executor(), accounts=_BrokenAccounts(), interval_ms=15_000)

    with pytest.raises(ConnectionError):
        asyncio.run(scheduler.run_once())

    state = scheduler.status()
    assert state.running is False
    assert state.last_error == "directory offline"


def test_start_and_stop_are_idempotent() -> None:
    executor = _Executor()
    scheduler = _scheduler(["0xa"], executor)

    async def _run() -> tuple[bool, bool, bool, bool, bool]:
        first = scheduler.start()
        second = scheduler.start()
        enabled = scheduler.status().enabled
        await asyncio.sleep(0)
        stopped = await scheduler.stop()
        stopped_again = await scheduler.stop()
        return first, second, enabled, stopped, stopped_again

    first, second, enabled, stopped, stopped_again = asyncio.run(_run())

    assert (first, second, enabled) == (True, False, True)
    assert (stopped, stopped_again) == (True, False)
    assert scheduler.status().enabled is False
