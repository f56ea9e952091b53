from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal

from treasurybot.agent.advisory_client import AdvisoryClient
from treasurybot.agent.guardrails import EXECUTION_RULES, decide_allocations
from treasurybot.config import Settings
from treasurybot.domain.models import (
    ZERO,
    ZERO_ADDRESS,
    BroadcastOutcome,
    ExecutionResult,
    GuardrailDecision,
    PrepareOutcome,
    TransactionRecord,
    TransactionStatus,
    non_negative,
    quantize_2dp,
)
from treasurybot.logging_context import with_cycle_context
from treasurybot.observability import get_instrumentation
from treasurybot.services.cycle_context import (
    CycleContext,
    CycleRequest,
    item_network_resolver,
    load_cycle_context,
)
from treasurybot.services.ports import (
    ChainExecutor,
    DelegationLedger,
    ExecutionAlerter,
    LedgerStore,
    PortfolioOracle,
    ProtocolMetricsSource,
)
from treasurybot.services.protocol_resolver import ProtocolResolver

logger = logging.getLogger(__name__)

EMPTY_CALL_DATA = "0x"
REASON_ADDRESS_UNKNOWN = "Protocol address is unknown"
REASON_BROADCAST_FAILED = "On-chain execution failed"
REASON_PREPARE_FAILED = "Execution plan could not be prepared"


def execution_investable_base(
    *,
    total_value_usd: Decimal,
    portfolio_percentage: Decimal,
    spent_24h_usd: Decimal,
    gas_reserve_usd: Decimal,
) -> Decimal:
    """Delegated slice of the portfolio minus today's spend and the gas buffer."""
    delegated = non_negative(total_value_usd) * non_negative(portfolio_percentage) / 100
    return quantize_2dp(
        max(ZERO, delegated - non_negative(spent_24h_usd) - non_negative(gas_reserve_usd))
    )


def build_execution_summary(total_usd: Decimal, *, broadcast_enabled: bool) -> str:
    if total_usd <= 0:
        return "No actions satisfied the guardrails."
    if broadcast_enabled:
        return f"AI executed on-chain actions worth {total_usd} USD."
    return f"AI prepared executable actions worth {total_usd} USD (auto execution disabled)."


class ExecutionService:
    """Runs one guarded execution cycle. Only this service talks to the chain executor."""

    def __init__(
        self,
        *,
        settings: Settings,
        advisory_client: AdvisoryClient,
        portfolio_oracle: PortfolioOracle,
        delegation_ledger: DelegationLedger,
        chain_executor: ChainExecutor,
        ledger_store: LedgerStore,
        alerter: ExecutionAlerter | None = None,
        metrics_source: ProtocolMetricsSource | None = None,
        resolver: ProtocolResolver | None = None,
    ) -> None:
        self.settings = settings
        self.advisory_client = advisory_client
        self.portfolio_oracle = portfolio_oracle
        self.delegation_ledger = delegation_ledger
        self.chain_executor = chain_executor
        self.ledger_store = ledger_store
        self.alerter = alerter
        self.metrics_source = metrics_source
        self.resolver = resolver or ProtocolResolver()
        self.instrumentation = get_instrumentation()

    @property
    def broadcast_enabled(self) -> bool:
        return self.settings.autonomous_broadcast_enabled

    async def execute(self, request: CycleRequest) -> ExecutionResult:
        context = await load_cycle_context(
            request,
            settings=self.settings,
            portfolio_oracle=self.portfolio_oracle,
            delegation_ledger=self.delegation_ledger,
            resolver=self.resolver,
            metrics_source=self.metrics_source,
        )
        with with_cycle_context(
            context.cycle_id, account=context.account, delegate=context.delegate, mode="execution"
        ), self.instrumentation.trace(
            "execution_cycle",
            attrs={"cycle_id": context.cycle_id, "broadcast_enabled": self.broadcast_enabled},
        ):
            return await self._run_cycle(context, request)

    async def _run_cycle(self, context: CycleContext, request: CycleRequest) -> ExecutionResult:
        advisory = await self.advisory_client.generate_advisory(
            context.advisory_request(
                risk_tolerance=request.risk_tolerance,
                scenario="execution",
                notes="Guarded execution flow",
            )
        )
        delegation = context.delegation
        base = execution_investable_base(
            total_value_usd=context.portfolio.total_value_usd,
            portfolio_percentage=delegation.portfolio_percentage,
            spent_24h_usd=delegation.spent_24h_usd,
            gas_reserve_usd=self.settings.gas_reserve_usd,
        )
        batch = decide_allocations(
            advisory.allocations,
            investable_base_usd=base,
            remaining_limit_usd=base,
            policy=context.guardrail_policy(deployment_network=self.settings.deployment_network),
            rules=EXECUTION_RULES,
            network_for=item_network_resolver(self.resolver, self.settings.deployment_network),
        )

        remaining = batch.remaining_limit_usd
        actions: list[GuardrailDecision] = []
        transactions: list[TransactionRecord] = []
        for decision in batch.decisions:
            if not decision.is_executed:
                actions.append(decision)
                continue
            settled, record = await self._settle(context, decision)
            if not settled.is_executed:
                remaining = quantize_2dp(remaining + decision.amount_usd)
            actions.append(settled)
            transactions.append(record)

        total = quantize_2dp(sum((a.amount_usd for a in actions if a.is_executed), ZERO))
        if total > 0 and self.broadcast_enabled:
            await self.delegation_ledger.increment_spend(context.account, context.delegate, total)

        result = ExecutionResult(
            account=context.account,
            delegate=context.delegate,
            generated_at=datetime.now(UTC),
            summary=build_execution_summary(total, broadcast_enabled=self.broadcast_enabled),
            total_executed_usd=total,
            remaining_daily_limit_usd=remaining,
            actions=tuple(actions),
            transactions=tuple(transactions),
            advisory=advisory,
            broadcast_enabled=self.broadcast_enabled,
        )
        self.instrumentation.counter("execution_cycles_total")
        self.instrumentation.histogram("execution_total_usd", float(total))
        logger.info(
            "execution_cycle_completed",
            extra={
                "extra": {
                    "total_executed_usd": str(total),
                    "remaining_daily_limit_usd": str(remaining),
                    "actions": len(actions),
                    "transactions": len(transactions),
                    "broadcast_enabled": self.broadcast_enabled,
                    "fallback_used": advisory.fallback_used,
                }
            },
        )
        await self._record(result)
        await self._alert(result)
        return result

    async def _settle(
        self, context: CycleContext, decision: GuardrailDecision
    ) -> tuple[GuardrailDecision, TransactionRecord]:
        address = self.resolver.resolve_address(decision.protocol_id, context.live_metrics)
        if address is None:
            return self._fail(
                decision, REASON_ADDRESS_UNKNOWN, address=ZERO_ADDRESS, call_data=EMPTY_CALL_DATA
            )

        call_data = decision.call_data or EMPTY_CALL_DATA
        try:
            prepared = await self.chain_executor.prepare(
                account=context.account,
                delegate=context.delegate,
                protocol_id=decision.protocol_id,
                protocol_address=address,
                amount_usd=decision.amount_usd,
                call_data=call_data,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "chain_prepare_failed", extra={"extra": {"protocol_id": decision.protocol_id}}
            )
            prepared = PrepareOutcome(ok=False, reason=f"Chain executor error: {type(exc).__name__}")

        if not prepared.ok or prepared.plan is None:
            return self._fail(
                decision,
                prepared.reason or REASON_PREPARE_FAILED,
                address=address,
                call_data=call_data,
            )

        plan = prepared.plan
        decision = replace(decision, protocol_address=address, call_data=plan.call_data)
        if not self.broadcast_enabled:
            return decision, TransactionRecord(
                protocol_id=plan.protocol_id,
                protocol_address=address,
                call_data=plan.call_data,
                amount_usd=decision.amount_usd,
                submitted_at=datetime.now(UTC),
                status=TransactionStatus.PENDING,
            )

        try:
            broadcast = await self.chain_executor.broadcast(plan)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "chain_broadcast_failed", extra={"extra": {"protocol_id": decision.protocol_id}}
            )
            broadcast = BroadcastOutcome(ok=False, reason=f"Chain executor error: {type(exc).__name__}")

        if not broadcast.ok:
            return self._fail(
                decision,
                broadcast.reason or REASON_BROADCAST_FAILED,
                address=address,
                call_data=plan.call_data,
                protocol_id=plan.protocol_id,
            )

        self.instrumentation.counter("execution_broadcasts_total")
        return replace(decision, transaction_hash=broadcast.tx_hash), TransactionRecord(
            protocol_id=plan.protocol_id,
            protocol_address=address,
            call_data=plan.call_data,
            amount_usd=decision.amount_usd,
            submitted_at=datetime.now(UTC),
            status=TransactionStatus.EXECUTED,
            transaction_hash=broadcast.tx_hash,
        )

    def _fail(
        self,
        decision: GuardrailDecision,
        reason: str,
        *,
        address: str,
        call_data: str,
        protocol_id: str | None = None,
    ) -> tuple[GuardrailDecision, TransactionRecord]:
        self.instrumentation.counter("execution_item_failures_total")
        logger.warning(
            "execution_item_downgraded",
            extra={"extra": {"protocol_id": decision.protocol_id, "reason": reason}},
        )
        record = TransactionRecord(
            protocol_id=protocol_id or decision.protocol_id,
            protocol_address=address,
            call_data=call_data,
            amount_usd=decision.amount_usd,
            submitted_at=datetime.now(UTC),
            status=TransactionStatus.FAILED,
            failure_reason=reason,
        )
        return decision.skip(reason), record

    async def _record(self, result: ExecutionResult) -> None:
        try:
            await self.ledger_store.record(result)
        except Exception:  # noqa: BLE001
            logger.exception("execution_record_failed", extra={"extra": {"account": result.account}})

    async def _alert(self, result: ExecutionResult) -> None:
        if self.alerter is None:
            return
        try:
            await self.alerter.notify(result)
        except Exception:  # noqa: BLE001
            logger.exception("execution_alert_failed", extra={"extra": {"account": result.account}})
