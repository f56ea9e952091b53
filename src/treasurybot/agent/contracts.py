from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from treasurybot.domain.models import PortfolioSnapshot, ProtocolMetrics, to_decimal


@dataclass(frozen=True)
class AdvisoryConstraints:
    daily_limit_usd: Decimal
    remaining_daily_limit_usd: Decimal
    max_risk_score: Decimal
    whitelist: tuple[str, ...]
    notes: str | None = None


@dataclass(frozen=True)
class AdvisoryRequest:
    account: str
    delegate: str
    portfolio: PortfolioSnapshot
    constraints: AdvisoryConstraints
    protocols: tuple[str, ...]
    risk_tolerance: str = "balanced"
    live_metrics: ProtocolMetrics | None = None
    scenario: str = "execution"


class AllocationEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    protocol: str = Field(min_length=1)
    allocation_percent: Decimal = Field(default=Decimal("0"), alias="allocationPercent")
    expected_apy: Decimal = Field(default=Decimal("0"), alias="expectedAPY")
    risk_score: Decimal = Field(default=Decimal("0"), alias="riskScore")
    rationale: str | None = None
    network: str | None = None

    @field_validator("allocation_percent", "expected_apy", "risk_score", mode="before")
    @classmethod
    def coerce_number(cls, value: object) -> Decimal:
        return to_decimal(value)

    @field_validator("protocol")
    @classmethod
    def strip_protocol(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("protocol must not be blank")
        return stripped


class AdvisoryEnvelope(BaseModel):
    """Structured payload expected from advisory providers."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    summary: str | None = None
    analysis: str | None = None
    allocations: list[AllocationEnvelope] = Field(default_factory=list)
    suggested_actions: list[Any] = Field(default_factory=list, alias="suggestedActions")
    governance_summary: str | None = Field(default=None, alias="governanceSummary")
    generated_at: datetime | None = Field(default=None, alias="generatedAt")

    @field_validator("summary", "analysis", "governance_summary", mode="before")
    @classmethod
    def coerce_text(cls, value: object) -> str | None:
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    @field_validator("suggested_actions", mode="before")
    @classmethod
    def coerce_actions(cls, value: object) -> list[Any]:
        if value is None:
            return []
        return value if isinstance(value, list) else [value]


def sanitize_advisory_json(raw: str, *, max_response_chars: int = 50_000) -> str:
    """Keep only the outermost JSON object of a provider response."""
    text = raw.strip()[:max_response_chars]
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ValueError("advisory response does not contain a JSON object")
    return text[start : end + 1]
