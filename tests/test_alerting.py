from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest
from fakes import make_advisory

from treasurybot.config import ConfigurationError, Settings
from treasurybot.domain.models import AdvisoryEvaluation, ExecutionResult
from treasurybot.services.alerting import (
    NullExecutionAlerter,
    WebhookExecutionAlerter,
    assess_execution,
)

WEBHOOK = "https://hooks.example/treasury"


def _result(
    *,
    executed: str = "10",
    remaining: str = "90",
    risk: str = "1",
    warnings: tuple[str, ...] = (),
    account: str = "0xabc",
) -> ExecutionResult:
    advisory = replace(
        make_advisory(),
        evaluation=AdvisoryEvaluation(
            confidence=Decimal("0.9"),
            risk_score=Decimal(risk),
            warnings=warnings,
            notes="",
            simulated_usd=Decimal(executed),
        ),
        governance_summary="Confidence 90%.",
    )
    return ExecutionResult(
        account=account,
        delegate="0xdelegate",
        generated_at=datetime(2025, 1, 1, tzinfo=UTC),
        summary="summary",
        total_executed_usd=Decimal(executed),
        remaining_daily_limit_usd=Decimal(remaining),
        actions=(),
        transactions=(),
        advisory=advisory,
        broadcast_enabled=True,
    )


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _alerter(handler, clock: _Clock | None = None, *, url: str = WEBHOOK) -> WebhookExecutionAlerter:
    return WebhookExecutionAlerter(
        webhook_url=url,
        cooldown_seconds=600.0,
        transport=httpx.MockTransport(handler),
        clock=clock or _Clock(),
    )


def test_assessment_flags_risk_utilization_and_warnings() -> None:
    quiet = assess_execution(
        _result(), risk_threshold=Decimal("4.2"), utilization_threshold=Decimal("0.85")
    )
    assert quiet.utilization == Decimal("0.1000")
    assert not quiet.should_alert

    risky = assess_execution(
        _result(risk="4.5"), risk_threshold=Decimal("4.2"), utilization_threshold=Decimal("0.85")
    )
    assert risky.high_risk and risky.should_alert

    busy = assess_execution(
        _result(executed="90", remaining="10"),
        risk_threshold=Decimal("4.2"),
        utilization_threshold=Decimal("0.85"),
    )
    assert busy.high_utilization

    warned = assess_execution(
        _result(warnings=("Protocol x is not whitelisted.",)),
        risk_threshold=Decimal("4.2"),
        utilization_threshold=Decimal("0.85"),
    )
    assert warned.has_warnings


def test_zero_budget_has_zero_utilization() -> None:
    assessment = assess_execution(
        _result(executed="0", remaining="0"),
        risk_threshold=Decimal("4.2"),
        utilization_threshold=Decimal("0.85"),
    )
    assert assessment.utilization == Decimal("0")


def test_webhook_receives_alert_payload() -> None:
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == WEBHOOK
        posted.append(json.loads(request.content))
        return httpx.Response(204)

    sent = asyncio.run(_alerter(handler).notify(_result(risk="4.8")))

    assert sent is True
    (payload,) = posted
    assert payload["type"] == "execution-alert"
    assert payload["account"] == "0xabc"
    assert payload["utilization"] == "0.1000"
    assert payload["evaluation"]["risk_score"] == "4.8"
    assert payload["governance_summary"] == "Confidence 90%."


def test_unremarkable_execution_is_not_posted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("webhook must not be called")

    assert asyncio.run(_alerter(handler).notify(_result())) is False


def test_missing_webhook_url_disables_alerts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("webhook must not be called")

    assert asyncio.run(_alerter(handler, url="").notify(_result(risk="5"))) is False
    assert asyncio.run(NullExecutionAlerter().notify(_result(risk="5"))) is False


def test_cooldown_is_tracked_per_account_and_delegate() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content)["account"])
        return httpx.Response(200)

    clock = _Clock()
    alerter = _alerter(handler, clock)

    async def _run() -> list[bool]:
        outcomes = [await alerter.notify(_result(risk="5"))]
        clock.now += 60
        outcomes.append(await alerter.notify(_result(risk="5")))
        outcomes.append(await alerter.notify(_result(risk="5", account="0xother")))
        clock.now += 600
        outcomes.append(await alerter.notify(_result(risk="5")))
        return outcomes

    assert asyncio.run(_run()) == [True, False, True, True]
    assert calls == ["0xabc", "0xother", "0xabc"]


def test_webhook_failure_is_reported_and_does_not_start_cooldown(caplog) -> None:
    statuses = [500, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses.pop(0))

    alerter = _alerter(handler)

    async def _run() -> list[bool]:
        return [
            await alerter.notify(_result(risk="5")),
            await alerter.notify(_result(risk="5")),
        ]

    assert asyncio.run(_run()) == [False, True]
    assert any(r.getMessage() == "execution_alert_webhook_failed" for r in caplog.records)


def test_from_settings_maps_thresholds() -> None:
    settings = Settings(
        ALERT_WEBHOOK_URL=WEBHOOK,
        ALERT_RISK_THRESHOLD="9",
        ALERT_UTILIZATION_THRESHOLD="0.5",
        ALERT_COOLDOWN_MINUTES=3,
    )

    alerter = WebhookExecutionAlerter.from_settings(settings)

    assert alerter.webhook_url == WEBHOOK
    assert alerter.risk_threshold == Decimal("5")
    assert alerter.utilization_threshold == Decimal("0.5")
    assert alerter.cooldown_seconds == 180.0


@pytest.mark.parametrize("url", ["ftp://hooks.example/treasury", "hooks.example/treasury"])
def test_from_settings_rejects_non_http_webhooks(url: str) -> None:
    with pytest.raises(ConfigurationError, match="ALERT_WEBHOOK_URL"):
        WebhookExecutionAlerter.from_settings(Settings(ALERT_WEBHOOK_URL=url))
