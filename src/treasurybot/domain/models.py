from __future__ import annotations

from dataclasses import dataclass, is_dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0")
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def to_decimal(value: object) -> Decimal:
    """Coerce loosely typed numeric input; NaN, infinities and garbage become zero."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        candidate = value
    else:
        try:
            candidate = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return ZERO
    if not candidate.is_finite():
        return ZERO
    return candidate


def non_negative(value: object) -> Decimal:
    return max(ZERO, to_decimal(value))


def quantize_2dp(value: object) -> Decimal:
    """Round to cents; magnitudes beyond the decimal context precision become zero."""
    try:
        return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return ZERO


def clamp(value: Decimal, low: Decimal, high: Decimal) -> Decimal:
    return min(max(value, low), high)


@dataclass(frozen=True)
class Position:
    protocol: str
    asset: str
    value_usd: Decimal = ZERO
    current_apy: Decimal = ZERO
    risk_score: Decimal = ZERO


@dataclass(frozen=True)
class PortfolioSnapshot:
    total_value_usd: Decimal
    net_apy: Decimal = ZERO
    positions: tuple[Position, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "total_value_usd", non_negative(self.total_value_usd))
        object.__setattr__(self, "net_apy", to_decimal(self.net_apy))
        object.__setattr__(self, "positions", tuple(self.positions))


@dataclass(frozen=True)
class DelegationConstraints:
    delegate: str
    daily_limit_usd: Decimal
    spent_24h_usd: Decimal = ZERO
    max_risk_score: Decimal = Decimal("5")
    whitelist: tuple[str, ...] = ()
    portfolio_percentage: Decimal = ZERO
    allowed_networks: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "daily_limit_usd", non_negative(self.daily_limit_usd))
        object.__setattr__(self, "spent_24h_usd", non_negative(self.spent_24h_usd))
        object.__setattr__(self, "max_risk_score", non_negative(self.max_risk_score))
        object.__setattr__(self, "whitelist", tuple(self.whitelist))
        object.__setattr__(
            self,
            "portfolio_percentage",
            clamp(non_negative(self.portfolio_percentage), ZERO, Decimal("100")),
        )
        object.__setattr__(self, "allowed_networks", tuple(self.allowed_networks))

    @property
    def remaining_daily_limit_usd(self) -> Decimal:
        return quantize_2dp(max(ZERO, self.daily_limit_usd - self.spent_24h_usd))


@dataclass(frozen=True)
class LiveVenue:
    """One pool or pair reported by the live metrics feed."""

    id: str
    address: str
    label: str
    apy: Decimal = ZERO
    risk_score: Decimal = ZERO
    tvl_usd: Decimal | None = None
    volume_24h_usd: Decimal | None = None
    source: str = "fallback"


@dataclass(frozen=True)
class ProtocolMetrics:
    pools: tuple[LiveVenue, ...] = ()
    pairs: tuple[LiveVenue, ...] = ()

    def venues(self) -> tuple[LiveVenue, ...]:
        return self.pools + self.pairs


@dataclass(frozen=True)
class AllocationItem:
    protocol: str
    allocation_percent: Decimal
    expected_apy: Decimal = ZERO
    risk_score: Decimal = ZERO
    rationale: str = "No rationale provided."
    network: str | None = None


@dataclass(frozen=True)
class AdvisoryEvaluation:
    confidence: Decimal
    risk_score: Decimal
    warnings: tuple[str, ...]
    notes: str
    simulated_usd: Decimal


@dataclass(frozen=True)
class AllocationAdvisory:
    summary: str
    analysis: str
    allocations: tuple[AllocationItem, ...]
    generated_at: datetime
    suggested_actions: tuple[str, ...] = ()
    evaluation: AdvisoryEvaluation | None = None
    governance_summary: str | None = None
    model: str | None = None
    provider: str | None = None
    fallback_used: bool = False

    def with_meta(self, *, model: str, provider: str, fallback_used: bool) -> AllocationAdvisory:
        return replace(self, model=model, provider=provider, fallback_used=fallback_used)


@dataclass(frozen=True)
class Executed:
    pass


@dataclass(frozen=True)
class Skipped:
    reason: str


DecisionOutcome = Executed | Skipped


class DecisionStatus(StrEnum):
    EXECUTED = "executed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class GuardrailDecision:
    protocol: str
    protocol_id: str
    allocation_percent: Decimal
    amount_usd: Decimal
    expected_apy: Decimal
    risk_score: Decimal
    outcome: DecisionOutcome
    simulation_usd: Decimal
    network: str | None = None
    protocol_address: str | None = None
    call_data: str | None = None
    transaction_hash: str | None = None

    @property
    def is_executed(self) -> bool:
        return isinstance(self.outcome, Executed)

    @property
    def status(self) -> DecisionStatus:
        return DecisionStatus.EXECUTED if self.is_executed else DecisionStatus.SKIPPED

    @property
    def reason(self) -> str | None:
        return self.outcome.reason if isinstance(self.outcome, Skipped) else None

    def skip(self, reason: str) -> GuardrailDecision:
        return replace(self, outcome=Skipped(reason), simulation_usd=ZERO)


class TransactionStatus(StrEnum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransactionRecord:
    protocol_id: str
    protocol_address: str
    call_data: str
    amount_usd: Decimal
    submitted_at: datetime
    status: TransactionStatus
    transaction_hash: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class ExecutionPlan:
    account: str
    delegate: str
    protocol_id: str
    protocol_address: str
    amount_usd: Decimal
    call_data: str


@dataclass(frozen=True)
class PrepareOutcome:
    ok: bool
    plan: ExecutionPlan | None = None
    reason: str | None = None


@dataclass(frozen=True)
class BroadcastOutcome:
    ok: bool
    tx_hash: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class DelegationSummary:
    daily_limit_usd: Decimal
    spent_24h_usd: Decimal
    whitelist: tuple[str, ...]
    max_risk_score: Decimal


@dataclass(frozen=True)
class PreviewResult:
    account: str
    delegate: str
    generated_at: datetime
    summary: str
    total_executable_usd: Decimal
    remaining_daily_limit_usd: Decimal
    actions: tuple[GuardrailDecision, ...]
    delegation: DelegationSummary
    advisory: AllocationAdvisory

    @property
    def warnings(self) -> tuple[str, ...]:
        return self.advisory.evaluation.warnings if self.advisory.evaluation else ()


@dataclass(frozen=True)
class ExecutionResult:
    account: str
    delegate: str
    generated_at: datetime
    summary: str
    total_executed_usd: Decimal
    remaining_daily_limit_usd: Decimal
    actions: tuple[GuardrailDecision, ...]
    transactions: tuple[TransactionRecord, ...]
    advisory: AllocationAdvisory
    broadcast_enabled: bool = False

    @property
    def warnings(self) -> tuple[str, ...]:
        return self.advisory.evaluation.warnings if self.advisory.evaluation else ()


class SchedulerTrigger(StrEnum):
    MANUAL = "manual"
    TIMER = "timer"


@dataclass(frozen=True)
class AccountRunResult:
    account: str
    status: str
    delegate: str | None = None
    executed_usd: Decimal | None = None
    remaining_daily_limit_usd: Decimal | None = None
    summary: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SchedulerRunSummary:
    source: SchedulerTrigger
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    processed_accounts: int
    success_count: int
    error_count: int
    results: tuple[AccountRunResult, ...] = ()


@dataclass(frozen=True)
class SchedulerState:
    enabled: bool
    running: bool
    interval_ms: int
    last_run_at: datetime | None = None
    last_duration_ms: int | None = None
    last_error: str | None = None
    last_summary: SchedulerRunSummary | None = None


def to_jsonable(value: Any) -> Any:
    """Render result dataclasses into JSON-safe primitives."""
    if isinstance(value, Executed):
        return {"status": DecisionStatus.EXECUTED.value}
    if isinstance(value, Skipped):
        return {"status": DecisionStatus.SKIPPED.value, "reason": value.reason}
    if isinstance(value, GuardrailDecision):
        payload = {k: to_jsonable(v) for k, v in asdict_shallow(value).items() if k != "outcome"}
        payload["status"] = value.status.value
        if value.reason is not None:
            payload["reason"] = value.reason
        return payload
    if is_dataclass(value) and not isinstance(value, type):
        return {k: to_jsonable(v) for k, v in asdict_shallow(value).items()}
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [to_jsonable(item) for item in value]
    return value


def asdict_shallow(value: Any) -> dict[str, Any]:
    return {name: getattr(value, name) for name in value.__dataclass_fields__}

