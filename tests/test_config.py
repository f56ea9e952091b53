from __future__ import annotations

import json
from decimal import Decimal

import pytest
from pydantic import ValidationError

from treasurybot.config import Settings, parse_provider_list


def test_defaults_give_one_unusable_provider() -> None:
    settings = Settings()

    (provider,) = settings.advisory_providers()

    assert provider.label == "default"
    assert provider.model == "anthropic/claude-3.5-sonnet"
    assert not provider.is_usable
    assert settings.autonomous_broadcast_enabled is False
    assert settings.gas_reserve_usd == Decimal("0.10")
    assert settings.default_protocols == ["nabla:usdc"]


def test_default_provider_uses_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADVISORY_API_KEY", "sk-live-123456789")

    (provider,) = Settings().advisory_providers()

    assert provider.is_usable
    assert provider.credential == "sk-live-123456789"


def test_provider_list_json_is_parsed_with_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADVISORY_API_KEY", "sk-shared-123456789")
    monkeypatch.setenv(
        "ADVISORY_PROVIDERS",
        json.dumps(
            [
                {"model": "gpt-4o", "label": "openai", "baseUrl": "https://api.openai.com/v1", "apiKey": "sk-own"},
                {"model": "  "},
                "garbage",
                {"label": "  "},
            ]
        ),
    )

    providers = Settings().advisory_providers()

    assert [p.label for p in providers] == ["openai", "provider-2", "provider-4"]
    assert providers[0].credential == "sk-own"
    assert providers[1].model == "anthropic/claude-3.5-sonnet"
    assert providers[1].credential == "sk-shared-123456789"
    assert providers[2].base_url == "https://openrouter.ai/api/v1"


def test_invalid_provider_list_falls_back_to_default() -> None:
    assert parse_provider_list(
        "{not json", default_model="m", default_base_url="u", default_credential=None
    ) == []
    assert parse_provider_list(
        '{"model": "m"}', default_model="m", default_base_url="u", default_credential=None
    ) == []

    settings = Settings(ADVISORY_PROVIDERS="{not json")
    assert [p.label for p in settings.advisory_providers()] == ["default"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Nabla:USDC, aave:usdc,nabla:usdc", ["nabla:usdc", "aave:usdc"]),
        ('["Uniswap:WMON-USDC", " "]', ["uniswap:wmon-usdc"]),
        ("", []),
    ],
)
def test_default_protocols_accept_csv_and_json(
    monkeypatch: pytest.MonkeyPatch, raw: str, expected: list[str]
) -> None:
    monkeypatch.setenv("DEFAULT_PROTOCOLS", raw)

    assert Settings().default_protocols == expected


def test_default_protocols_json_must_be_a_list(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEFAULT_PROTOCOLS", '["a"')
    with pytest.raises(ValidationError):
        Settings()


def test_numeric_settings_are_clamped() -> None:
    settings = Settings(
        ADVISORY_RETRY_DELAY_MS=10,
        ADVISORY_TIMEOUT_MS=999_999,
        SCHEDULER_INTERVAL_MS=1_000,
        ALERT_UTILIZATION_THRESHOLD="3",
        ALERT_COOLDOWN_MINUTES=0,
    )

    assert settings.advisory_retry_delay_ms == 1_000
    assert settings.retry_base_delay_seconds == 1.0
    assert settings.advisory_timeout_ms == 120_000
    assert settings.request_timeout_seconds == 120.0
    assert settings.scheduler_interval_ms == 15_000
    assert settings.alert_utilization_threshold == Decimal("1")
    assert settings.alert_cooldown_minutes == 1


@pytest.mark.parametrize(
    "overrides",
    [{"ADVISORY_MAX_RETRIES": -1}, {"GAS_RESERVE_USD": "-0.5"}],
)
def test_negative_values_are_rejected(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)
