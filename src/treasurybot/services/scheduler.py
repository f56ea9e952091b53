from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Protocol
from uuid import uuid4

from treasurybot.domain.models import (
    AccountRunResult,
    ExecutionResult,
    SchedulerRunSummary,
    SchedulerState,
    SchedulerTrigger,
)
from treasurybot.logging_context import with_logging_context
from treasurybot.observability import get_instrumentation
from treasurybot.services.cycle_context import CycleRequest
from treasurybot.services.ports import AccountDirectory

logger = logging.getLogger(__name__)

RUN_WITH_ERRORS_MESSAGE = "scheduler completed with errors"


class SchedulerConflictError(RuntimeError):
    """Raised when a manual run is requested while another run is in flight."""


class CycleExecutor(Protocol):
    async def execute(self, request: CycleRequest) -> ExecutionResult:
        ...


class ExecutionScheduler:
    """Single-flight periodic driver around the execution service.

    Timer ticks that overlap a running iteration are skipped silently; manual
    triggers raise ``SchedulerConflictError`` instead.
    """

    def __init__(
        self,
        *,
        executor: CycleExecutor,
        accounts: AccountDirectory,
        interval_ms: int,
    ) -> None:
        self.executor = executor
        self.accounts = accounts
        self.interval_ms = interval_ms
        self._enabled = False
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._last_run_at: datetime | None = None
        self._last_duration_ms: int | None = None
        self._last_error: str | None = None
        self._last_summary: SchedulerRunSummary | None = None

    @property
    def running(self) -> bool:
        return self._running

    def status(self) -> SchedulerState:
        return SchedulerState(
            enabled=self._enabled,
            running=self._running,
            interval_ms=self.interval_ms,
            last_run_at=self._last_run_at,
            last_duration_ms=self._last_duration_ms,
            last_error=self._last_error,
            last_summary=self._last_summary,
        )

    def start(self) -> bool:
        if self._enabled:
            logger.info("scheduler_already_started")
            return False
        self._enabled = True
        self._task = asyncio.get_running_loop().create_task(self._tick_loop())
        logger.info("scheduler_started", extra={"extra": {"interval_ms": self.interval_ms}})
        return True

    async def stop(self) -> bool:
        if not self._enabled:
            logger.info("scheduler_already_stopped")
            return False
        self._enabled = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped")
        return True

    async def _tick_loop(self) -> None:
        while self._enabled:
            try:
                await self.run_once(SchedulerTrigger.TIMER)
            except Exception:  # noqa: BLE001
                logger.exception("scheduler_tick_failed")
            await asyncio.sleep(self.interval_ms / 1000.0)

    async def run_once(
        self, source: SchedulerTrigger = SchedulerTrigger.MANUAL
    ) -> SchedulerRunSummary | None:
        if self._running:
            message = "Scheduler iteration already running."
            if source is SchedulerTrigger.MANUAL:
                raise SchedulerConflictError(message)
            logger.warning("scheduler_tick_skipped", extra={"extra": {"reason": message}})
            return None

        self._running = True
        started_at = datetime.now(UTC)
        started = time.monotonic()
        try:
            with with_logging_context(run_id=uuid4().hex, mode="scheduler"):
                summary = await self._run_accounts(source, started_at, started)
        except Exception as exc:
            self._last_error = str(exc) or type(exc).__name__
            logger.exception("scheduler_run_failed", extra={"extra": {"source": source.value}})
            raise
        finally:
            self._running = False
            self._last_run_at = started_at
            self._last_duration_ms = int((time.monotonic() - started) * 1000)

        self._last_summary = summary
        self._last_error = RUN_WITH_ERRORS_MESSAGE if summary.error_count > 0 else None
        return summary

    async def _run_accounts(
        self, source: SchedulerTrigger, started_at: datetime, started: float
    ) -> SchedulerRunSummary:
        results: list[AccountRunResult] = []
        error_count = 0
        for account in await self.accounts.list_accounts():
            try:
                result = await self.executor.execute(CycleRequest(account=account))
            except Exception as exc:  # noqa: BLE001
                error_count += 1
                logger.exception("scheduler_account_failed", extra={"extra": {"account": account}})
                results.append(
                    AccountRunResult(
                        account=account,
                        status="error",
                        error=str(exc) or type(exc).__name__,
                    )
                )
                continue
            results.append(
                AccountRunResult(
                    account=result.account,
                    status="success",
                    delegate=result.delegate,
                    executed_usd=result.total_executed_usd,
                    remaining_daily_limit_usd=result.remaining_daily_limit_usd,
                    summary=result.summary,
                )
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        summary = SchedulerRunSummary(
            source=source,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            duration_ms=duration_ms,
            processed_accounts=len(results),
            success_count=len(results) - error_count,
            error_count=error_count,
            results=tuple(results),
        )
        instrumentation = get_instrumentation()
        instrumentation.counter("scheduler_runs_total", attrs={"source": source.value})
        instrumentation.histogram("scheduler_run_duration_ms", float(duration_ms))
        logger.info(
            "scheduler_run_completed",
            extra={
                "extra": {
                    "source": source.value,
                    "processed_accounts": summary.processed_accounts,
                    "error_count": error_count,
                }
            },
        )
        return summary
