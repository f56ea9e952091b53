from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

_MIN_SCHEDULER_INTERVAL_MS = 15_000


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


@dataclass(frozen=True)
class ProviderConfig:
    model: str
    label: str
    base_url: str
    credential: str | None = None

    @property
    def is_usable(self) -> bool:
        return bool(self.credential)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    advisory_api_key: SecretStr | None = Field(default=None, alias="ADVISORY_API_KEY")
    advisory_base_url: str = Field(default="https://openrouter.ai/api/v1", alias="ADVISORY_BASE_URL")
    advisory_model: str = Field(default="anthropic/claude-3.5-sonnet", alias="ADVISORY_MODEL")
    advisory_providers_raw: str | None = Field(default=None, alias="ADVISORY_PROVIDERS")
    advisory_max_retries: int = Field(default=3, alias="ADVISORY_MAX_RETRIES")
    advisory_retry_delay_ms: int = Field(default=5_000, alias="ADVISORY_RETRY_DELAY_MS")
    advisory_timeout_ms: int = Field(default=30_000, alias="ADVISORY_TIMEOUT_MS")

    gas_reserve_usd: Decimal = Field(default=Decimal("0.10"), alias="GAS_RESERVE_USD")
    autonomous_broadcast_enabled: bool = Field(default=False, alias="AUTONOMOUS_BROADCAST_ENABLED")
    deployment_network: str = Field(default="monad-testnet", alias="DEPLOYMENT_NETWORK")
    default_delegate: str = Field(
        default="0x0000000000000000000000000000000000000000", alias="DEFAULT_DELEGATE"
    )
    default_protocols: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["nabla:usdc"], alias="DEFAULT_PROTOCOLS"
    )

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    scheduler_interval_ms: int = Field(default=120_000, alias="SCHEDULER_INTERVAL_MS")

    alert_webhook_url: str = Field(default="", alias="ALERT_WEBHOOK_URL")
    alert_risk_threshold: Decimal = Field(default=Decimal("4.2"), alias="ALERT_RISK_THRESHOLD")
    alert_utilization_threshold: Decimal = Field(
        default=Decimal("0.85"), alias="ALERT_UTILIZATION_THRESHOLD"
    )
    alert_cooldown_minutes: int = Field(default=10, alias="ALERT_COOLDOWN_MINUTES")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    otlp_endpoint: str | None = Field(default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT")

    @field_validator("default_protocols", mode="before")
    def parse_default_protocols(cls, value: str | list[str]) -> list[str]:
        items: list[object]
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("["):
                parsed = json.loads(raw)
                if not isinstance(parsed, list):
                    raise ValueError("DEFAULT_PROTOCOLS JSON value must be a list")
                items = parsed
            else:
                items = raw.split(",")
        else:
            items = list(value)

        normalized: list[str] = []
        for item in items:
            candidate = str(item).strip().lower() if item is not None else ""
            if candidate and candidate not in normalized:
                normalized.append(candidate)
        return normalized

    @field_validator("advisory_max_retries")
    def validate_max_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("ADVISORY_MAX_RETRIES must be >= 0")
        return value

    @field_validator("advisory_retry_delay_ms")
    def clamp_retry_delay(cls, value: int) -> int:
        return min(max(value, 1_000), 20_000)

    @field_validator("advisory_timeout_ms")
    def clamp_timeout(cls, value: int) -> int:
        return min(max(value, 5_000), 120_000)

    @field_validator("scheduler_interval_ms")
    def clamp_scheduler_interval(cls, value: int) -> int:
        if value < _MIN_SCHEDULER_INTERVAL_MS:
            logger.warning(
                "scheduler_interval_clamped",
                extra={"extra": {"requested_ms": value, "applied_ms": _MIN_SCHEDULER_INTERVAL_MS}},
            )
            return _MIN_SCHEDULER_INTERVAL_MS
        return value

    @field_validator("gas_reserve_usd")
    def validate_gas_reserve(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("GAS_RESERVE_USD must be >= 0")
        return value

    @field_validator("alert_risk_threshold")
    def clamp_risk_threshold(cls, value: Decimal) -> Decimal:
        return min(max(value, Decimal("0")), Decimal("5"))

    @field_validator("alert_utilization_threshold")
    def clamp_utilization_threshold(cls, value: Decimal) -> Decimal:
        return min(max(value, Decimal("0")), Decimal("1"))

    @field_validator("alert_cooldown_minutes")
    def validate_cooldown(cls, value: int) -> int:
        return max(value, 1)

    @property
    def retry_base_delay_seconds(self) -> float:
        return self.advisory_retry_delay_ms / 1000.0

    @property
    def request_timeout_seconds(self) -> float:
        return self.advisory_timeout_ms / 1000.0

    def advisory_providers(self) -> list[ProviderConfig]:
        default_key = (
            self.advisory_api_key.get_secret_value() if self.advisory_api_key is not None else ""
        )
        default = ProviderConfig(
            model=self.advisory_model,
            label="default",
            base_url=self.advisory_base_url,
            credential=default_key or None,
        )
        parsed = parse_provider_list(
            self.advisory_providers_raw,
            default_model=self.advisory_model,
            default_base_url=self.advisory_base_url,
            default_credential=default_key or None,
        )
        return parsed or [default]


def parse_provider_list(
    raw: str | None,
    *,
    default_model: str,
    default_base_url: str,
    default_credential: str | None,
) -> list[ProviderConfig]:
    if raw is None or not raw.strip():
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("advisory_providers_invalid_json")
        return []
    if not isinstance(parsed, list):
        return []

    providers: list[ProviderConfig] = []
    for index, entry in enumerate(parsed):
        if not isinstance(entry, dict):
            continue
        model = _clean(entry.get("model")) or default_model
        base_url = _clean(entry.get("baseUrl") or entry.get("base_url")) or default_base_url
        label = _clean(entry.get("label")) or f"provider-{index + 1}"
        credential = _clean(entry.get("apiKey") or entry.get("credential")) or default_credential
        if not model or not base_url:
            continue
        providers.append(
            ProviderConfig(model=model, label=label, base_url=base_url, credential=credential)
        )
    return providers


def _clean(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()
