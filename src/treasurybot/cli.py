from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from pydantic import ValidationError

from treasurybot.adapters.fixture_backend import DryRunChainExecutor, FixtureBackend, JsonlLedgerStore
from treasurybot.agent.advisory_client import AdvisoryClient
from treasurybot.agent.telemetry import AdvisoryAuditTrail
from treasurybot.config import ConfigurationError, Settings
from treasurybot.domain.models import SchedulerState, SchedulerTrigger, to_jsonable
from treasurybot.logging_utils import setup_logging
from treasurybot.observability import configure_instrumentation, get_instrumentation
from treasurybot.security.redaction import redact_data
from treasurybot.services.alerting import NullExecutionAlerter, WebhookExecutionAlerter
from treasurybot.services.cycle_context import CycleRequest
from treasurybot.services.execution_service import ExecutionService
from treasurybot.services.ports import ExecutionAlerter
from treasurybot.services.preview_service import PreviewService
from treasurybot.services.scheduler import ExecutionScheduler

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_PATH = "./treasury-ledger.jsonl"


def _split_protocols(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _print_json(payload: object) -> None:
    print(json.dumps(to_jsonable(payload), indent=2, sort_keys=True))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="treasurybot",
        epilog="Configuration is read from environment variables and an optional .env file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_cycle_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--state", required=True, help="Path to the JSON fixture state file")
        sub.add_argument("--account", required=True, help="Treasury account address")
        sub.add_argument("--delegate", default=None, help="Delegate address (defaults to DEFAULT_DELEGATE)")
        sub.add_argument("--protocols", default=None, help="Comma separated protocol ids to consider")
        sub.add_argument("--risk-tolerance", default="balanced")
        sub.add_argument("--ledger", default=DEFAULT_LEDGER_PATH, help="JSONL history output path")

    preview_parser = subparsers.add_parser("preview", help="Simulate one cycle without the chain")
    add_cycle_args(preview_parser)

    execute_parser = subparsers.add_parser("execute", help="Run one guarded execution cycle")
    add_cycle_args(execute_parser)
    execute_parser.add_argument(
        "--broadcast",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Override AUTONOMOUS_BROADCAST_ENABLED for this run",
    )

    schedule_parser = subparsers.add_parser("schedule", help="Run scheduler iterations over all accounts")
    schedule_parser.add_argument("--state", required=True)
    schedule_parser.add_argument("--ledger", default=DEFAULT_LEDGER_PATH)
    schedule_parser.add_argument("--cycles", type=int, default=1)
    schedule_parser.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Pause between iterations (defaults to SCHEDULER_INTERVAL_MS)",
    )

    subparsers.add_parser("providers", help="Show configured advisory providers (redacted)")
    return parser


def _build_services(
    settings: Settings, state_path: str, ledger_path: str
) -> tuple[FixtureBackend, AdvisoryClient, JsonlLedgerStore]:
    backend = FixtureBackend.load(state_path)
    advisory = AdvisoryClient.from_settings(settings, audit_trail=AdvisoryAuditTrail())
    return backend, advisory, JsonlLedgerStore(ledger_path)


def _build_alerter(settings: Settings) -> ExecutionAlerter:
    if settings.alert_webhook_url:
        return WebhookExecutionAlerter.from_settings(settings)
    return NullExecutionAlerter()


def _execution_service(
    settings: Settings,
    backend: FixtureBackend,
    advisory: AdvisoryClient,
    store: JsonlLedgerStore,
    alerter: ExecutionAlerter,
) -> ExecutionService:
    return ExecutionService(
        settings=settings,
        advisory_client=advisory,
        portfolio_oracle=backend,
        delegation_ledger=backend,
        chain_executor=DryRunChainExecutor(),
        ledger_store=store,
        alerter=alerter,
        metrics_source=backend,
    )


async def run_preview(settings: Settings, args: argparse.Namespace) -> int:
    backend, advisory, store = _build_services(settings, args.state, args.ledger)
    service = PreviewService(
        settings=settings,
        advisory_client=advisory,
        portfolio_oracle=backend,
        delegation_ledger=backend,
        ledger_store=store,
        metrics_source=backend,
    )
    try:
        result = await service.preview(
            CycleRequest(
                account=args.account,
                delegate=args.delegate,
                protocols=_split_protocols(args.protocols),
                risk_tolerance=args.risk_tolerance,
            )
        )
    finally:
        await advisory.aclose()
    _print_json(result)
    return 0


async def run_execute(settings: Settings, args: argparse.Namespace) -> int:
    if args.broadcast is not None:
        settings = settings.model_copy(update={"autonomous_broadcast_enabled": args.broadcast})
    alerter = _build_alerter(settings)
    backend, advisory, store = _build_services(settings, args.state, args.ledger)
    service = _execution_service(settings, backend, advisory, store, alerter)
    try:
        result = await service.execute(
            CycleRequest(
                account=args.account,
                delegate=args.delegate,
                protocols=_split_protocols(args.protocols),
                risk_tolerance=args.risk_tolerance,
            )
        )
    finally:
        await advisory.aclose()
    _print_json(result)
    return 0


async def run_schedule(settings: Settings, args: argparse.Namespace) -> int:
    if args.cycles < 1:
        print("schedule: --cycles must be >= 1")
        return 2
    if not settings.scheduler_enabled:
        logger.warning("scheduler_disabled", extra={"extra": {"setting": "SCHEDULER_ENABLED"}})
        _print_json(
            SchedulerState(enabled=False, running=False, interval_ms=settings.scheduler_interval_ms)
        )
        return 0
    interval = (
        args.interval_seconds
        if args.interval_seconds is not None
        else settings.scheduler_interval_ms / 1000.0
    )
    alerter = _build_alerter(settings)
    backend, advisory, store = _build_services(settings, args.state, args.ledger)
    scheduler = ExecutionScheduler(
        executor=_execution_service(settings, backend, advisory, store, alerter),
        accounts=backend,
        interval_ms=settings.scheduler_interval_ms,
    )
    try:
        for cycle in range(args.cycles):
            summary = await scheduler.run_once(SchedulerTrigger.TIMER)
            if summary is not None:
                _print_json(summary)
            if cycle < args.cycles - 1:
                await asyncio.sleep(max(0.0, interval))
    finally:
        await advisory.aclose()
    _print_json(replace(scheduler.status(), last_summary=None))
    return 0 if scheduler.status().last_error is None else 1


def run_providers(settings: Settings) -> int:
    rows = [
        {
            "label": provider.label,
            "model": provider.model,
            "base_url": provider.base_url,
            "usable": provider.is_usable,
            "credential": provider.credential,
        }
        for provider in settings.advisory_providers()
    ]
    print(json.dumps(redact_data(rows), indent=2, sort_keys=True))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.otlp_endpoint,
        deployment_network=settings.deployment_network,
    )
    logger.info("runtime_prepared", extra={"extra": {"command": args.command}})

    try:
        if args.command == "providers":
            return run_providers(settings)
        if args.command == "preview":
            return asyncio.run(run_preview(settings, args))
        if args.command == "execute":
            return asyncio.run(run_execute(settings, args))
        if args.command == "schedule":
            return asyncio.run(run_schedule(settings, args))
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2
    except (LookupError, OSError, ValidationError) as exc:
        print(f"{args.command}: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print(f"{args.command}: interrupted, shutting down cleanly")
        return 130
    finally:
        get_instrumentation().flush()

    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
