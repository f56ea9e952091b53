from __future__ import annotations

from decimal import Decimal

from treasurybot.agent.contracts import AdvisoryConstraints, AdvisoryRequest
from treasurybot.agent.prompt import SYSTEM_PROMPT, PromptBuilder, rank_candidates
from treasurybot.domain.models import LiveVenue, PortfolioSnapshot, Position, ProtocolMetrics


def _request(metrics: ProtocolMetrics | None = None, *, notes: str | None = None) -> AdvisoryRequest:
    return AdvisoryRequest(
        account="0xabc",
        delegate="0xdef",
        portfolio=PortfolioSnapshot(
            total_value_usd=Decimal("1234.5"),
            net_apy=Decimal("4.25"),
            positions=(Position(protocol="nabla", asset="USDC", value_usd=Decimal("1234.5")),),
        ),
        constraints=AdvisoryConstraints(
            daily_limit_usd=Decimal("500"),
            remaining_daily_limit_usd=Decimal("120"),
            max_risk_score=Decimal("3"),
            whitelist=("nabla:usdc",),
            notes=notes,
        ),
        protocols=("nabla:usdc", "uniswap:wmon-usdc"),
        risk_tolerance="conservative",
        live_metrics=metrics,
    )


def _venue(venue_id: str, apy: str, **kwargs) -> LiveVenue:
    return LiveVenue(id=venue_id, address="0x" + "1" * 40, label=venue_id.upper(), apy=Decimal(apy), **kwargs)


def test_rank_candidates_orders_by_apy_and_limits() -> None:
    metrics = ProtocolMetrics(
        pools=(_venue("a:x", "1"), _venue("b:x", "9")),
        pairs=(_venue("c:x", "5"),),
    )

    assert [v.id for v in rank_candidates(metrics, limit=2)] == ["b:x", "c:x"]
    assert rank_candidates(None) == ()


def test_prompt_includes_portfolio_constraints_and_metrics() -> None:
    metrics = ProtocolMetrics(
        pools=(_venue("Nabla:USDC", "7.456", tvl_usd=Decimal("1500000.4"), source="nabla-api"),)
    )

    built = PromptBuilder().build(_request(metrics, notes="Guarded execution flow"))

    assert built.system == SYSTEM_PROMPT
    assert "Portfolio value 1234.50 USD, net APY 4.25%. Risk tolerance: conservative." in built.prompt
    assert "nabla (USDC) - 1234.50 USD" in built.prompt
    assert "- nabla:usdc - NABLA:USDC, APY 7.46%, risk 0, TVL ~$1500000, source: nabla-api" in built.prompt
    assert "Remaining limit: 120.00 USD" in built.prompt
    assert "Whitelisted protocols: nabla:usdc, uniswap:wmon-usdc" in built.prompt
    assert "Notes: Guarded execution flow" in built.prompt
    assert not built.trimmed


def test_prompt_without_metrics_asks_for_conservative_allocation() -> None:
    built = PromptBuilder().build(_request())

    assert "Metrics unavailable, provide a conservative diversified allocation." in built.prompt
    assert built.candidates == ()


def test_prompt_is_trimmed_to_budget() -> None:
    built = PromptBuilder(max_chars=80).build(_request())

    assert built.trimmed
    assert len(built.prompt) == 80
