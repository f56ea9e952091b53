from __future__ import annotations

import logging
from datetime import UTC, datetime

from treasurybot.agent.advisory_client import AdvisoryClient
from treasurybot.agent.guardrails import PREVIEW_RULES, decide_allocations
from treasurybot.config import Settings
from treasurybot.domain.models import DelegationSummary, PreviewResult, quantize_2dp
from treasurybot.logging_context import with_cycle_context
from treasurybot.observability import get_instrumentation
from treasurybot.services.cycle_context import CycleRequest, load_cycle_context
from treasurybot.services.ports import (
    DelegationLedger,
    LedgerStore,
    PortfolioOracle,
    ProtocolMetricsSource,
)
from treasurybot.services.protocol_resolver import ProtocolResolver

logger = logging.getLogger(__name__)

NO_ACTIONS_SUMMARY = "No actions satisfied the guardrails."


class PreviewService:
    """Simulates one cycle against the full portfolio value without touching the chain."""

    def __init__(
        self,
        *,
        settings: Settings,
        advisory_client: AdvisoryClient,
        portfolio_oracle: PortfolioOracle,
        delegation_ledger: DelegationLedger,
        ledger_store: LedgerStore | None = None,
        metrics_source: ProtocolMetricsSource | None = None,
        resolver: ProtocolResolver | None = None,
    ) -> None:
        self.settings = settings
        self.advisory_client = advisory_client
        self.portfolio_oracle = portfolio_oracle
        self.delegation_ledger = delegation_ledger
        self.ledger_store = ledger_store
        self.metrics_source = metrics_source
        self.resolver = resolver or ProtocolResolver()

    async def preview(self, request: CycleRequest) -> PreviewResult:
        context = await load_cycle_context(
            request,
            settings=self.settings,
            portfolio_oracle=self.portfolio_oracle,
            delegation_ledger=self.delegation_ledger,
            resolver=self.resolver,
            metrics_source=self.metrics_source,
        )
        with with_cycle_context(
            context.cycle_id, account=context.account, delegate=context.delegate, mode="preview"
        ), get_instrumentation().trace("preview_cycle", attrs={"cycle_id": context.cycle_id}):
            advisory = await self.advisory_client.generate_advisory(
                context.advisory_request(
                    risk_tolerance=request.risk_tolerance,
                    scenario="preview",
                    notes="Preview simulation",
                )
            )
            batch = decide_allocations(
                advisory.allocations,
                investable_base_usd=context.portfolio.total_value_usd,
                remaining_limit_usd=context.delegation.remaining_daily_limit_usd,
                policy=context.guardrail_policy(deployment_network=self.settings.deployment_network),
                rules=PREVIEW_RULES,
            )

            total = batch.executed_total_usd
            summary = (
                f"Actions worth {total} USD can be executed without breaching guardrails."
                if total > 0
                else NO_ACTIONS_SUMMARY
            )
            delegation = context.delegation
            result = PreviewResult(
                account=context.account,
                delegate=context.delegate,
                generated_at=datetime.now(UTC),
                summary=summary,
                total_executable_usd=total,
                remaining_daily_limit_usd=batch.remaining_limit_usd,
                actions=batch.decisions,
                delegation=DelegationSummary(
                    daily_limit_usd=quantize_2dp(delegation.daily_limit_usd),
                    spent_24h_usd=quantize_2dp(delegation.spent_24h_usd),
                    whitelist=delegation.whitelist,
                    max_risk_score=delegation.max_risk_score,
                ),
                advisory=advisory,
            )
            get_instrumentation().counter("preview_cycles_total")
            logger.info(
                "preview_cycle_completed",
                extra={
                    "extra": {
                        "total_executable_usd": str(total),
                        "remaining_daily_limit_usd": str(batch.remaining_limit_usd),
                        "actions": len(batch.decisions),
                        "fallback_used": advisory.fallback_used,
                    }
                },
            )
            await self._record(result)
            return result

    async def _record(self, result: PreviewResult) -> None:
        if self.ledger_store is None:
            return
        try:
            await self.ledger_store.record(result)
        except Exception:  # noqa: BLE001
            logger.exception("preview_record_failed", extra={"extra": {"account": result.account}})
