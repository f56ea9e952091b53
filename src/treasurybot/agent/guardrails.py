from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from decimal import Decimal

from treasurybot.agent.contracts import AdvisoryConstraints
from treasurybot.domain.models import (
    ZERO,
    AdvisoryEvaluation,
    AllocationAdvisory,
    AllocationItem,
    Executed,
    GuardrailDecision,
    PortfolioSnapshot,
    Skipped,
    clamp,
    non_negative,
    quantize_2dp,
    to_decimal,
)
from treasurybot.services.protocol_resolver import is_whitelisted, normalize_protocol_id

MAX_ALLOCATION_PERCENT = Decimal("100")
MAX_RISK_SCORE = Decimal("5")
MIN_EXPECTED_APY = Decimal("-100")
MAX_EXPECTED_APY = Decimal("10000")
TOTAL_PERCENT_WARNING_THRESHOLD = Decimal("101")
CONFIDENCE_BASE = Decimal("0.9")
CONFIDENCE_PENALTY_PER_WARNING = Decimal("0.15")
CONFIDENCE_FLOOR = Decimal("0.1")
CONFIDENCE_CEILING = Decimal("0.99")

REASON_NOT_WHITELISTED = "Protocol is not whitelisted"
REASON_RISK_EXCEEDED = "Risk score exceeds delegation limit"
REASON_NETWORK_BLOCKED = "Network is not allowed by delegation"
REASON_INSUFFICIENT_LIMIT = "Insufficient daily limit remaining"

DEFAULT_SUMMARY = "AI generated a portfolio rebalancing plan."
DEFAULT_ANALYSIS = "No analytical commentary provided."


def normalize_allocation(item: AllocationItem) -> AllocationItem:
    return replace(
        item,
        protocol=item.protocol.strip(),
        allocation_percent=quantize_2dp(
            clamp(non_negative(item.allocation_percent), ZERO, MAX_ALLOCATION_PERCENT)
        ),
        expected_apy=quantize_2dp(
            clamp(to_decimal(item.expected_apy), MIN_EXPECTED_APY, MAX_EXPECTED_APY)
        ),
        risk_score=quantize_2dp(clamp(non_negative(item.risk_score), ZERO, MAX_RISK_SCORE)),
        rationale=item.rationale or "No rationale provided.",
    )


def compute_confidence(warning_count: int) -> Decimal:
    raw = CONFIDENCE_BASE - CONFIDENCE_PENALTY_PER_WARNING * warning_count
    return quantize_2dp(clamp(raw, CONFIDENCE_FLOOR, CONFIDENCE_CEILING))


def normalize_advisory(
    advisory: AllocationAdvisory,
    *,
    portfolio: PortfolioSnapshot,
    constraints: AdvisoryConstraints,
) -> AllocationAdvisory:
    """Clamp a raw advisory and attach a simulated-spend evaluation.

    Runs for every advisory, offline fallback included, so that preview and
    execution see the same warnings and confidence regardless of mode.
    """
    allocations = tuple(normalize_allocation(item) for item in advisory.allocations)
    whitelist = {normalize_protocol_id(entry) for entry in constraints.whitelist}
    max_risk = non_negative(constraints.max_risk_score)
    total_value = portfolio.total_value_usd

    warnings: list[str] = []
    remaining = quantize_2dp(non_negative(constraints.remaining_daily_limit_usd))
    simulated = ZERO

    for item in allocations:
        planned = quantize_2dp(total_value * item.allocation_percent / 100)
        executable = min(remaining, planned)

        if not is_whitelisted(item.protocol, whitelist):
            warnings.append(f"Protocol {item.protocol} is not whitelisted.")
        if item.risk_score > max_risk:
            warnings.append(
                f"Protocol {item.protocol} risk score ({item.risk_score}) exceeds the limit {max_risk}."
            )
        if planned > remaining:
            warnings.append(
                f"Insufficient daily limit for {item.protocol}: required {planned} USD, "
                f"available {remaining} USD."
            )

        simulated = quantize_2dp(simulated + max(ZERO, executable))
        remaining = quantize_2dp(max(ZERO, remaining - executable))

    total_percent = sum((item.allocation_percent for item in allocations), ZERO)
    if total_percent > TOTAL_PERCENT_WARNING_THRESHOLD:
        warnings.append(f"Total allocation exceeds 100% ({quantize_2dp(total_percent)}%).")

    unique_warnings = tuple(dict.fromkeys(warnings))
    average_risk = (
        sum((item.risk_score for item in allocations), ZERO) / len(allocations)
        if allocations
        else ZERO
    )
    evaluation = AdvisoryEvaluation(
        confidence=compute_confidence(len(unique_warnings)),
        risk_score=quantize_2dp(average_risk),
        warnings=unique_warnings,
        notes=f"Remaining daily limit after simulation: {remaining} USD.",
        simulated_usd=simulated,
    )

    suggested_actions = advisory.suggested_actions or tuple(
        f"Allocate {item.allocation_percent}% "
        f"({quantize_2dp(total_value * item.allocation_percent / 100)} USD) to {item.protocol}."
        for item in allocations
    )
    confidence_pct = int((evaluation.confidence * 100).to_integral_value())
    governance_summary = advisory.governance_summary or (
        f"Confidence {confidence_pct}%. Simulated spend: {evaluation.simulated_usd} USD "
        f"with limit {quantize_2dp(constraints.daily_limit_usd)} USD."
    )

    return replace(
        advisory,
        summary=(advisory.summary or "").strip() or DEFAULT_SUMMARY,
        analysis=(advisory.analysis or "").strip() or DEFAULT_ANALYSIS,
        allocations=allocations,
        suggested_actions=tuple(suggested_actions),
        evaluation=evaluation,
        governance_summary=governance_summary,
    )


@dataclass(frozen=True)
class Candidate:
    protocol_id: str
    risk_score: Decimal
    amount_usd: Decimal
    network: str | None


@dataclass(frozen=True)
class GuardrailPolicy:
    whitelist: frozenset[str]
    max_risk_score: Decimal
    allowed_networks: frozenset[str] = frozenset()


@dataclass(frozen=True)
class GuardrailRule:
    name: str
    violates: Callable[[Candidate, GuardrailPolicy, Decimal], bool]
    reason: str


def _not_whitelisted(candidate: Candidate, policy: GuardrailPolicy, remaining: Decimal) -> bool:
    return not is_whitelisted(candidate.protocol_id, policy.whitelist)


def _risk_exceeded(candidate: Candidate, policy: GuardrailPolicy, remaining: Decimal) -> bool:
    return candidate.risk_score > policy.max_risk_score


def _network_blocked(candidate: Candidate, policy: GuardrailPolicy, remaining: Decimal) -> bool:
    network = normalize_protocol_id(candidate.network)
    return not network or network not in policy.allowed_networks


def _over_budget(candidate: Candidate, policy: GuardrailPolicy, remaining: Decimal) -> bool:
    return candidate.amount_usd > remaining


WHITELIST_RULE = GuardrailRule("whitelist", _not_whitelisted, REASON_NOT_WHITELISTED)
RISK_RULE = GuardrailRule("risk", _risk_exceeded, REASON_RISK_EXCEEDED)
NETWORK_RULE = GuardrailRule("network", _network_blocked, REASON_NETWORK_BLOCKED)
BUDGET_RULE = GuardrailRule("budget", _over_budget, REASON_INSUFFICIENT_LIMIT)

# Budget stays last so a disallowed item never consumes the limit.
PREVIEW_RULES: tuple[GuardrailRule, ...] = (WHITELIST_RULE, RISK_RULE, BUDGET_RULE)
EXECUTION_RULES: tuple[GuardrailRule, ...] = (WHITELIST_RULE, RISK_RULE, NETWORK_RULE, BUDGET_RULE)


def first_violation(
    candidate: Candidate,
    policy: GuardrailPolicy,
    remaining: Decimal,
    rules: Sequence[GuardrailRule],
) -> GuardrailRule | None:
    for rule in rules:
        if rule.violates(candidate, policy, remaining):
            return rule
    return None


@dataclass(frozen=True)
class DecisionBatch:
    decisions: tuple[GuardrailDecision, ...]
    seeded_limit_usd: Decimal
    remaining_limit_usd: Decimal

    @property
    def executed_total_usd(self) -> Decimal:
        return quantize_2dp(sum((d.amount_usd for d in self.decisions if d.is_executed), ZERO))


def decide_allocations(
    allocations: Iterable[AllocationItem],
    *,
    investable_base_usd: Decimal,
    remaining_limit_usd: Decimal,
    policy: GuardrailPolicy,
    rules: Sequence[GuardrailRule] = PREVIEW_RULES,
    network_for: Callable[[AllocationItem, str], str | None] | None = None,
) -> DecisionBatch:
    base = non_negative(investable_base_usd)
    seeded = quantize_2dp(non_negative(remaining_limit_usd))
    remaining = seeded
    decisions: list[GuardrailDecision] = []

    for item in allocations:
        protocol_id = normalize_protocol_id(item.protocol)
        percent = non_negative(to_decimal(item.allocation_percent))
        amount = quantize_2dp(base * percent / 100)
        network = network_for(item, protocol_id) if network_for is not None else item.network
        candidate = Candidate(
            protocol_id=protocol_id,
            risk_score=non_negative(item.risk_score),
            amount_usd=amount,
            network=network,
        )

        violated = first_violation(candidate, policy, remaining, rules)
        decision = GuardrailDecision(
            protocol=item.protocol,
            protocol_id=protocol_id,
            allocation_percent=item.allocation_percent,
            amount_usd=amount,
            expected_apy=item.expected_apy,
            risk_score=item.risk_score,
            outcome=Executed() if violated is None else Skipped(violated.reason),
            simulation_usd=amount if violated is None else ZERO,
            network=network,
        )
        if violated is None:
            remaining = quantize_2dp(max(ZERO, remaining - amount))
        decisions.append(decision)

    return DecisionBatch(
        decisions=tuple(decisions),
        seeded_limit_usd=seeded,
        remaining_limit_usd=remaining,
    )
