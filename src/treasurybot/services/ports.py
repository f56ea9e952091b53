from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from treasurybot.domain.models import (
    BroadcastOutcome,
    DelegationConstraints,
    ExecutionPlan,
    ExecutionResult,
    PortfolioSnapshot,
    PrepareOutcome,
    PreviewResult,
    ProtocolMetrics,
)


class PortfolioOracle(Protocol):
    async def get_snapshot(self, account: str) -> PortfolioSnapshot:
        ...


class DelegationLedger(Protocol):
    async def get_state(self, account: str, delegate: str) -> DelegationConstraints:
        ...

    async def increment_spend(self, account: str, delegate: str, amount_usd: Decimal) -> None:
        ...


class ChainExecutor(Protocol):
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
        ...

    async def broadcast(self, plan: ExecutionPlan) -> BroadcastOutcome:
        ...


class LedgerStore(Protocol):
    async def record(self, result: ExecutionResult | PreviewResult) -> None:
        ...


class ExecutionAlerter(Protocol):
    async def notify(self, result: ExecutionResult) -> bool:
        ...


class AccountDirectory(Protocol):
    async def list_accounts(self) -> list[str]:
        ...


class ProtocolMetricsSource(Protocol):
    async def get_metrics(self) -> ProtocolMetrics | None:
        ...
