from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from treasurybot.agent.contracts import AdvisoryRequest
from treasurybot.domain.models import LiveVenue, ProtocolMetrics, quantize_2dp

MAX_CANDIDATES = 12

SYSTEM_PROMPT = (
    "You are the treasurer of an on-chain corporate treasury. "
    "Respond strictly in JSON with fields summary, analysis, allocations[], suggestedActions[]. "
    "Each allocations[] entry has protocol, allocationPercent, expectedAPY, riskScore, rationale. "
    "allocations[].protocol must use identifiers from the protocol hints (e.g. \"nabla:usdc\"). "
    "You may propose protocols outside the whitelist; the system flags them for review."
)


@dataclass(frozen=True)
class PromptBuildResult:
    system: str
    prompt: str
    candidates: tuple[LiveVenue, ...]
    trimmed: bool


def rank_candidates(metrics: ProtocolMetrics | None, *, limit: int = MAX_CANDIDATES) -> tuple[LiveVenue, ...]:
    if metrics is None:
        return ()
    ranked = sorted(metrics.venues(), key=lambda venue: venue.apy, reverse=True)
    return tuple(ranked[: max(0, limit)])


def _format_candidate(venue: LiveVenue) -> str:
    parts = [
        f"{venue.id.lower()} - {venue.label}",
        f"APY {quantize_2dp(venue.apy)}%",
        f"risk {venue.risk_score}",
    ]
    if venue.tvl_usd is not None:
        parts.append(f"TVL ~${venue.tvl_usd.quantize(Decimal('1'))}")
    if venue.volume_24h_usd is not None:
        parts.append(f"24h volume ~${venue.volume_24h_usd.quantize(Decimal('1'))}")
    parts.append(f"source: {venue.source}")
    return "- " + ", ".join(parts)


@dataclass(frozen=True)
class PromptBuilder:
    """Render the advisory context package as a plain-text prompt."""

    max_chars: int = 6000
    max_candidates: int = MAX_CANDIDATES

    def build(self, request: AdvisoryRequest) -> PromptBuildResult:
        portfolio = request.portfolio
        constraints = request.constraints
        protocols = ", ".join(request.protocols) or "none"

        constraint_lines = [
            f"Daily limit: {quantize_2dp(constraints.daily_limit_usd)} USD",
            f"Remaining limit: {quantize_2dp(constraints.remaining_daily_limit_usd)} USD",
            f"Max allowed risk score: {constraints.max_risk_score}",
            f"Whitelisted protocols: {protocols}",
        ]
        if constraints.notes and constraints.notes.strip():
            constraint_lines.append(f"Notes: {constraints.notes.strip()}")

        if portfolio.positions:
            positions_block = "\n".join(
                f"{position.protocol} ({position.asset}) - {quantize_2dp(position.value_usd)} USD, "
                f"APY {quantize_2dp(position.current_apy)}%, risk {position.risk_score}"
                for position in portfolio.positions
            )
        else:
            positions_block = "No current positions."

        candidates = rank_candidates(request.live_metrics, limit=self.max_candidates)
        if candidates:
            overview = "\n".join(_format_candidate(venue) for venue in candidates)
        else:
            overview = "Metrics unavailable, provide a conservative diversified allocation."

        body = "\n".join(
            [
                f"Portfolio value {quantize_2dp(portfolio.total_value_usd)} USD, "
                f"net APY {quantize_2dp(portfolio.net_apy)}%. "
                f"Risk tolerance: {request.risk_tolerance}.",
                "Current positions:",
                positions_block,
                "Protocol live metrics (use the provided identifiers in allocations[].protocol):",
                overview,
                "Constraints and context:",
                "; ".join(constraint_lines),
                "",
                "Propose the optimal allocation strategy.",
            ]
        )
        trimmed = False
        if len(body) > self.max_chars:
            trimmed = True
            body = body[: self.max_chars]
        return PromptBuildResult(
            system=SYSTEM_PROMPT,
            prompt=body,
            candidates=candidates,
            trimmed=trimmed,
        )
