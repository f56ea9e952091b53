from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

import httpx

from treasurybot.config import ConfigurationError, Settings
from treasurybot.domain.models import ZERO, ExecutionResult, to_jsonable
from treasurybot.observability import get_instrumentation

logger = logging.getLogger(__name__)

_WEBHOOK_TIMEOUT_SECONDS = 5.0


def _require_http_url(url: str) -> None:
    try:
        scheme = httpx.URL(url).scheme
    except httpx.InvalidURL as exc:
        raise ConfigurationError(f"ALERT_WEBHOOK_URL is malformed: {exc}") from exc
    if scheme not in {"http", "https"}:
        raise ConfigurationError("ALERT_WEBHOOK_URL must be an http or https URL")


@dataclass(frozen=True)
class AlertAssessment:
    utilization: Decimal
    high_risk: bool
    high_utilization: bool
    has_warnings: bool

    @property
    def should_alert(self) -> bool:
        return self.high_risk or self.high_utilization or self.has_warnings


def assess_execution(
    result: ExecutionResult,
    *,
    risk_threshold: Decimal,
    utilization_threshold: Decimal,
) -> AlertAssessment:
    base_limit = result.total_executed_usd + result.remaining_daily_limit_usd
    utilization = (
        ZERO if base_limit == 0 else (result.total_executed_usd / base_limit).quantize(Decimal("0.0001"))
    )
    evaluation = result.advisory.evaluation
    return AlertAssessment(
        utilization=utilization,
        high_risk=evaluation is not None and evaluation.risk_score >= risk_threshold,
        high_utilization=utilization >= utilization_threshold,
        has_warnings=bool(result.warnings),
    )


class NullExecutionAlerter:
    async def notify(self, result: ExecutionResult) -> bool:
        del result
        return False


class WebhookExecutionAlerter:
    """Posts risky or heavily utilised executions to a webhook, once per cooldown."""

    def __init__(
        self,
        *,
        webhook_url: str,
        risk_threshold: Decimal = Decimal("4.2"),
        utilization_threshold: Decimal = Decimal("0.85"),
        cooldown_seconds: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.webhook_url = webhook_url
        self.risk_threshold = risk_threshold
        self.utilization_threshold = utilization_threshold
        self.cooldown_seconds = cooldown_seconds
        self._transport = transport
        self._clock = clock
        self._last_sent: dict[tuple[str, str], float] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> WebhookExecutionAlerter:
        webhook_url = settings.alert_webhook_url.strip()
        if webhook_url:
            _require_http_url(webhook_url)
        return cls(
            webhook_url=webhook_url,
            risk_threshold=settings.alert_risk_threshold,
            utilization_threshold=settings.alert_utilization_threshold,
            cooldown_seconds=settings.alert_cooldown_minutes * 60.0,
            transport=transport,
        )

    async def notify(self, result: ExecutionResult) -> bool:
        if not self.webhook_url:
            return False

        key = (result.account, result.delegate)
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            return False

        assessment = assess_execution(
            result,
            risk_threshold=self.risk_threshold,
            utilization_threshold=self.utilization_threshold,
        )
        if not assessment.should_alert:
            return False

        payload = {
            "type": "execution-alert",
            "account": result.account,
            "delegate": result.delegate,
            "summary": result.summary,
            "total_executed_usd": str(result.total_executed_usd),
            "remaining_daily_limit_usd": str(result.remaining_daily_limit_usd),
            "utilization": str(assessment.utilization),
            "evaluation": to_jsonable(result.advisory.evaluation),
            "warnings": list(result.warnings),
            "governance_summary": result.advisory.governance_summary,
            "generated_at": result.generated_at.isoformat(),
        }
        try:
            async with httpx.AsyncClient(
                timeout=_WEBHOOK_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "execution_alert_webhook_failed",
                extra={"extra": {"account": result.account, "error_type": type(exc).__name__}},
            )
            return False

        self._last_sent[key] = now
        get_instrumentation().counter("execution_alerts_sent_total")
        return True
