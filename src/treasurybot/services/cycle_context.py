from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from treasurybot.agent.contracts import AdvisoryConstraints, AdvisoryRequest
from treasurybot.agent.guardrails import GuardrailPolicy
from treasurybot.config import Settings
from treasurybot.domain.models import (
    AllocationItem,
    DelegationConstraints,
    PortfolioSnapshot,
    ProtocolMetrics,
)
from treasurybot.services.ports import DelegationLedger, PortfolioOracle, ProtocolMetricsSource
from treasurybot.services.protocol_resolver import ProtocolResolver, normalize_protocol_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleRequest:
    account: str
    delegate: str | None = None
    protocols: tuple[str, ...] = ()
    risk_tolerance: str = "balanced"


@dataclass(frozen=True)
class CycleContext:
    cycle_id: str
    account: str
    delegate: str
    portfolio: PortfolioSnapshot
    delegation: DelegationConstraints
    live_metrics: ProtocolMetrics | None
    resolved_whitelist: frozenset[str]
    requested_protocols: tuple[str, ...]

    def advisory_request(self, *, risk_tolerance: str, scenario: str, notes: str) -> AdvisoryRequest:
        return AdvisoryRequest(
            account=self.account,
            delegate=self.delegate,
            portfolio=self.portfolio,
            constraints=AdvisoryConstraints(
                daily_limit_usd=self.delegation.daily_limit_usd,
                remaining_daily_limit_usd=self.delegation.remaining_daily_limit_usd,
                max_risk_score=self.delegation.max_risk_score,
                whitelist=tuple(sorted(self.resolved_whitelist)),
                notes=notes,
            ),
            protocols=self.requested_protocols,
            risk_tolerance=risk_tolerance,
            live_metrics=self.live_metrics,
            scenario=scenario,
        )

    def guardrail_policy(self, *, deployment_network: str) -> GuardrailPolicy:
        networks = {normalize_protocol_id(n) for n in self.delegation.allowed_networks} - {""}
        return GuardrailPolicy(
            whitelist=self.resolved_whitelist,
            max_risk_score=self.delegation.max_risk_score,
            allowed_networks=frozenset(networks or {normalize_protocol_id(deployment_network)}),
        )


def choose_requested_protocols(
    requested: tuple[str, ...],
    *,
    resolved_whitelist: frozenset[str],
    raw_whitelist: tuple[str, ...],
    default_protocols: list[str],
) -> tuple[str, ...]:
    cleaned = tuple(p.strip() for p in requested if p and p.strip())
    if cleaned:
        return cleaned
    if resolved_whitelist:
        return tuple(sorted(resolved_whitelist))
    raw = tuple(p.strip() for p in raw_whitelist if p and p.strip())
    if raw:
        return raw
    return tuple(default_protocols)


def item_network_resolver(resolver: ProtocolResolver, deployment_network: str):
    """Item network: advisory value, else static registry entry, else deployment network."""

    def _network_for(item: AllocationItem, protocol_id: str) -> str | None:
        explicit = normalize_protocol_id(item.network)
        if explicit:
            return explicit
        return resolver.network_for(protocol_id) or normalize_protocol_id(deployment_network)

    return _network_for


async def load_cycle_context(
    request: CycleRequest,
    *,
    settings: Settings,
    portfolio_oracle: PortfolioOracle,
    delegation_ledger: DelegationLedger,
    resolver: ProtocolResolver,
    metrics_source: ProtocolMetricsSource | None = None,
) -> CycleContext:
    account = normalize_protocol_id(request.account)
    delegate = normalize_protocol_id(request.delegate or settings.default_delegate)

    delegation = await delegation_ledger.get_state(account, delegate)
    portfolio = await portfolio_oracle.get_snapshot(account)

    live_metrics: ProtocolMetrics | None = None
    if metrics_source is not None:
        try:
            live_metrics = await metrics_source.get_metrics()
        except Exception:  # noqa: BLE001
            logger.warning(
                "protocol_metrics_unavailable",
                exc_info=True,
                extra={"extra": {"account": account}},
            )

    resolved = resolver.resolve_identifiers(delegation.whitelist, live_metrics)
    requested = choose_requested_protocols(
        request.protocols,
        resolved_whitelist=resolved,
        raw_whitelist=delegation.whitelist,
        default_protocols=settings.default_protocols,
    )
    return CycleContext(
        cycle_id=uuid4().hex,
        account=account,
        delegate=delegate,
        portfolio=portfolio,
        delegation=delegation,
        live_metrics=live_metrics,
        resolved_whitelist=resolved,
        requested_protocols=requested,
    )
