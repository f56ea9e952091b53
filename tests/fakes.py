from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from treasurybot.domain.models import (
    AllocationAdvisory,
    AllocationItem,
    BroadcastOutcome,
    DelegationConstraints,
    ExecutionPlan,
    PortfolioSnapshot,
    PrepareOutcome,
    ProtocolMetrics,
)


class FakeAdvisoryClient:
    def __init__(self, advisory: AllocationAdvisory) -> None:
        self.advisory = advisory
        self.requests = []

    async def generate_advisory(self, request):
        self.requests.append(request)
        return self.advisory


class FakeOracle:
    def __init__(self, snapshot: PortfolioSnapshot) -> None:
        self.snapshot = snapshot

    async def get_snapshot(self, account: str) -> PortfolioSnapshot:
        del account
        return self.snapshot


class FakeLedger:
    def __init__(self, state: DelegationConstraints, *, fail_increment: bool = False) -> None:
        self.state = state
        self.fail_increment = fail_increment
        self.increments: list[tuple[str, str, Decimal]] = []

    async def get_state(self, account: str, delegate: str) -> DelegationConstraints:
        del account, delegate
        return self.state

    async def increment_spend(self, account: str, delegate: str, amount_usd: Decimal) -> None:
        if self.fail_increment:
            raise RuntimeError("ledger unavailable")
        self.increments.append((account, delegate, amount_usd))


class FakeChain:
    def __init__(
        self,
        *,
        prepare_fail: set[str] | None = None,
        broadcast_fail: set[str] | None = None,
        raise_on_prepare: bool = False,
    ) -> None:
        self.prepare_fail = prepare_fail or set()
        self.broadcast_fail = broadcast_fail or set()
        self.raise_on_prepare = raise_on_prepare
        self.prepared: list[str] = []
        self.broadcasts: list[ExecutionPlan] = []

    async def prepare(self, *, account, delegate, protocol_id, protocol_address, amount_usd, call_data):
        del call_data
        if self.raise_on_prepare:
            raise ConnectionError("rpc down")
        self.prepared.append(protocol_id)
        if protocol_id in self.prepare_fail:
            return PrepareOutcome(ok=False, reason="Simulation reverted")
        return PrepareOutcome(
            ok=True,
            plan=ExecutionPlan(
                account=account,
                delegate=delegate,
                protocol_id=protocol_id,
                protocol_address=protocol_address,
                amount_usd=amount_usd,
                call_data="0xdeadbeef",
            ),
        )

    async def broadcast(self, plan: ExecutionPlan) -> BroadcastOutcome:
        if plan.protocol_id in self.broadcast_fail:
            return BroadcastOutcome(ok=False, reason="Bundler rejected user operation")
        self.broadcasts.append(plan)
        return BroadcastOutcome(ok=True, tx_hash=f"0xhash-{plan.protocol_id}")


class FakeStore:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.records = []

    async def record(self, result) -> None:
        if self.fail:
            raise OSError("disk full")
        self.records.append(result)


class FakeAlerter:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.notified = []

    async def notify(self, result) -> bool:
        if self.fail:
            raise RuntimeError("webhook exploded")
        self.notified.append(result)
        return True


def make_advisory(*items: AllocationItem) -> AllocationAdvisory:
    return AllocationAdvisory(
        summary="plan",
        analysis="analysis",
        allocations=tuple(items),
        generated_at=datetime(2025, 1, 1, tzinfo=UTC),
        model="test-model",
        provider="test",
    )


class FakeMetricsSource:
    def __init__(self, metrics: ProtocolMetrics | None = None, *, fail: bool = False) -> None:
        self.metrics = metrics or ProtocolMetrics()
        self.fail = fail

    async def get_metrics(self) -> ProtocolMetrics:
        if self.fail:
            raise TimeoutError("metrics feed timed out")
        return self.metrics
