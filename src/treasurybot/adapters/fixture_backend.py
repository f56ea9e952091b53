from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from hashlib import sha256
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from treasurybot.domain.models import (
    BroadcastOutcome,
    DelegationConstraints,
    ExecutionPlan,
    ExecutionResult,
    LiveVenue,
    PortfolioSnapshot,
    Position,
    PrepareOutcome,
    PreviewResult,
    ProtocolMetrics,
    quantize_2dp,
    to_jsonable,
)
from treasurybot.services.protocol_resolver import is_address, normalize_protocol_id

logger = logging.getLogger(__name__)


class PositionModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    protocol: str
    asset: str
    value_usd: Decimal = Decimal("0")
    current_apy: Decimal = Decimal("0")
    risk_score: Decimal = Decimal("0")


class PortfolioModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total_value_usd: Decimal = Decimal("0")
    net_apy: Decimal = Decimal("0")
    positions: list[PositionModel] = Field(default_factory=list)


class DelegationModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    delegate: str
    daily_limit_usd: Decimal = Decimal("0")
    spent_24h_usd: Decimal = Decimal("0")
    max_risk_score: Decimal = Decimal("5")
    whitelist: list[str] = Field(default_factory=list)
    portfolio_percentage: Decimal = Decimal("0")
    allowed_networks: list[str] = Field(default_factory=list)


class AccountModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    portfolio: PortfolioModel = Field(default_factory=PortfolioModel)
    delegation: DelegationModel


class VenueModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    address: str
    label: str = ""
    apy: Decimal = Decimal("0")
    risk_score: Decimal = Decimal("0")
    tvl_usd: Decimal | None = None
    volume_24h_usd: Decimal | None = None
    source: str = "fixture"


class MetricsModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pools: list[VenueModel] = Field(default_factory=list)
    pairs: list[VenueModel] = Field(default_factory=list)


class FixtureState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    accounts: dict[str, AccountModel] = Field(default_factory=dict)
    metrics: MetricsModel | None = None


def _venue(model: VenueModel) -> LiveVenue:
    return LiveVenue(
        id=model.id,
        address=model.address,
        label=model.label or model.id,
        apy=model.apy,
        risk_score=model.risk_score,
        tvl_usd=model.tvl_usd,
        volume_24h_usd=model.volume_24h_usd,
        source=model.source,
    )


class FixtureBackend:
    """Portfolio oracle, delegation ledger, account directory and metrics feed over one JSON file."""

    def __init__(self, state: FixtureState, *, path: Path | None = None) -> None:
        self.state = state
        self.path = path
        self._accounts = {normalize_protocol_id(k): v for k, v in state.accounts.items()}

    @classmethod
    def load(cls, path: str | Path) -> FixtureBackend:
        resolved = Path(path)
        state = FixtureState.model_validate_json(resolved.read_text(encoding="utf-8"))
        return cls(state, path=resolved)

    def _account(self, account: str) -> AccountModel:
        key = normalize_protocol_id(account)
        try:
            return self._accounts[key]
        except KeyError:
            raise LookupError(f"unknown account: {account}") from None

    async def list_accounts(self) -> list[str]:
        return sorted(self._accounts)

    async def get_snapshot(self, account: str) -> PortfolioSnapshot:
        portfolio = self._account(account).portfolio
        return PortfolioSnapshot(
            total_value_usd=portfolio.total_value_usd,
            net_apy=portfolio.net_apy,
            positions=tuple(Position(**p.model_dump()) for p in portfolio.positions),
        )

    async def get_state(self, account: str, delegate: str) -> DelegationConstraints:
        delegation = self._account(account).delegation
        if normalize_protocol_id(delegation.delegate) != normalize_protocol_id(delegate):
            logger.info(
                "fixture_delegate_override",
                extra={"extra": {"account": account, "configured": delegation.delegate}},
            )
        return DelegationConstraints(
            delegate=normalize_protocol_id(delegation.delegate),
            daily_limit_usd=delegation.daily_limit_usd,
            spent_24h_usd=delegation.spent_24h_usd,
            max_risk_score=delegation.max_risk_score,
            whitelist=tuple(delegation.whitelist),
            portfolio_percentage=delegation.portfolio_percentage,
            allowed_networks=tuple(delegation.allowed_networks),
        )

    async def increment_spend(self, account: str, delegate: str, amount_usd: Decimal) -> None:
        delegation = self._account(account).delegation
        delegation.spent_24h_usd = quantize_2dp(delegation.spent_24h_usd + amount_usd)
        logger.info(
            "fixture_spend_incremented",
            extra={
                "extra": {
                    "account": account,
                    "delegate": delegate,
                    "amount_usd": str(amount_usd),
                    "spent_24h_usd": str(delegation.spent_24h_usd),
                }
            },
        )
        self.save()

    async def get_metrics(self) -> ProtocolMetrics | None:
        metrics = self.state.metrics
        if metrics is None:
            return None
        return ProtocolMetrics(
            pools=tuple(_venue(v) for v in metrics.pools),
            pairs=tuple(_venue(v) for v in metrics.pairs),
        )

    def save(self) -> None:
        if self.path is None:
            return
        self.path.write_text(self.state.model_dump_json(indent=2), encoding="utf-8")


@dataclass
class DryRunChainExecutor:
    """Prepares deterministic plans and fabricates transaction hashes without a chain."""

    fail_protocols: frozenset[str] = frozenset()
    broadcasts: list[ExecutionPlan] = field(default_factory=list)

    async def prepare(
        self,
        *,
        account: str,
        delegate: str,
        protocol_id: str,
        protocol_address: str,
        amount_usd: Decimal,
        call_data: str,
    ) -> PrepareOutcome:
        if not is_address(protocol_address):
            return PrepareOutcome(ok=False, reason="Protocol address is invalid")
        if amount_usd <= 0:
            return PrepareOutcome(ok=False, reason="Amount must be positive")
        return PrepareOutcome(
            ok=True,
            plan=ExecutionPlan(
                account=account,
                delegate=delegate,
                protocol_id=protocol_id,
                protocol_address=protocol_address,
                amount_usd=amount_usd,
                call_data=call_data or "0x",
            ),
        )

    async def broadcast(self, plan: ExecutionPlan) -> BroadcastOutcome:
        if normalize_protocol_id(plan.protocol_id) in self.fail_protocols:
            return BroadcastOutcome(ok=False, reason="Dry-run broadcast rejected")
        self.broadcasts.append(plan)
        digest = sha256(
            "|".join(
                [plan.account, plan.delegate, plan.protocol_id, plan.protocol_address, str(plan.amount_usd)]
            ).encode("utf-8")
        ).hexdigest()
        return BroadcastOutcome(ok=True, tx_hash=f"0x{digest}")


class JsonlLedgerStore:
    """Append-only JSON lines history of preview and execution results."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def record(self, result: ExecutionResult | PreviewResult) -> None:
        kind = "execution" if isinstance(result, ExecutionResult) else "preview"
        line = json.dumps({"kind": kind, "result": to_jsonable(result)}, sort_keys=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def read_all(self) -> list[dict[str, object]]:
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]
