from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from decimal import Decimal

from pydantic import ValidationError

from treasurybot.agent.contracts import AdvisoryEnvelope, AdvisoryRequest, sanitize_advisory_json
from treasurybot.agent.guardrails import normalize_advisory
from treasurybot.agent.prompt import PromptBuilder
from treasurybot.agent.provider import AdvisoryProviderError, ChatCompletionsProvider, ProviderReply
from treasurybot.agent.telemetry import (
    AdvisoryAuditTrail,
    AdvisoryCallRecord,
    AdvisoryTelemetry,
    CallStatus,
    InMemoryAdvisoryTelemetry,
)
from treasurybot.config import ProviderConfig, Settings
from treasurybot.domain.models import (
    AllocationAdvisory,
    AllocationItem,
    quantize_2dp,
)
from treasurybot.observability import get_instrumentation
from treasurybot.services.retry import AdvisoryRetryPolicy, FailureKind

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

OFFLINE_PROVIDER_LABEL = "offline"
FALLBACK_SUMMARY = "Advisory provider unavailable, using fallback allocation logic."
FALLBACK_ANALYSIS = (
    "Advisory provider is offline. Applying local strategy: "
    "evenly distribute assets across whitelisted protocols."
)
FALLBACK_RATIONALE = "Fallback without advisory provider: equal split across whitelisted protocols."


def render_suggested_action(entry: object) -> str | None:
    if entry is None:
        return None
    if isinstance(entry, str):
        return entry.strip() or None
    if isinstance(entry, dict):
        action = str(entry.get("action") or entry.get("description") or "").strip()
        impact = str(entry.get("impact") or "").strip()
        if action and impact:
            return f"{action} ({impact})"
        return action or None
    return str(entry)


def advisory_from_envelope(envelope: AdvisoryEnvelope) -> AllocationAdvisory:
    generated_at = envelope.generated_at or datetime.now(UTC)
    if generated_at.tzinfo is None:
        generated_at = generated_at.replace(tzinfo=UTC)
    actions = tuple(
        text for text in (render_suggested_action(e) for e in envelope.suggested_actions) if text
    )
    return AllocationAdvisory(
        summary=envelope.summary or "",
        analysis=envelope.analysis or "",
        allocations=tuple(
            AllocationItem(
                protocol=item.protocol,
                allocation_percent=item.allocation_percent,
                expected_apy=item.expected_apy,
                risk_score=item.risk_score,
                rationale=item.rationale or "No rationale provided.",
                network=item.network,
            )
            for item in envelope.allocations
        ),
        generated_at=generated_at,
        suggested_actions=actions,
        governance_summary=envelope.governance_summary,
    )


def build_offline_fallback(request: AdvisoryRequest) -> AllocationAdvisory:
    protocols = list(request.protocols)
    allocations: list[AllocationItem] = []
    if protocols:
        share = quantize_2dp(Decimal("100") / len(protocols))
        net_apy = request.portfolio.net_apy
        allocations = [
            AllocationItem(
                protocol=protocol,
                allocation_percent=share,
                expected_apy=net_apy + 1 + index,
                risk_score=Decimal(max(1, 5 - index)),
                rationale=FALLBACK_RATIONALE,
            )
            for index, protocol in enumerate(protocols)
        ]
    return AllocationAdvisory(
        summary=FALLBACK_SUMMARY,
        analysis=FALLBACK_ANALYSIS,
        allocations=tuple(allocations),
        generated_at=datetime.now(UTC),
        suggested_actions=tuple(
            f"Move {item.allocation_percent}% into {item.protocol}." for item in allocations
        ),
        fallback_used=True,
    )


class AdvisoryClient:
    """Obtains one allocation advisory per cycle, degrading to an offline fallback.

    Providers are tried round-robin starting from an index owned by this instance;
    the index advances past the provider that answered successfully. Only timeouts,
    rate limits and server errors are retried.
    """

    def __init__(
        self,
        *,
        providers: Sequence[ProviderConfig],
        transport: ChatCompletionsProvider | None = None,
        retry_policy: AdvisoryRetryPolicy | None = None,
        prompt_builder: PromptBuilder | None = None,
        telemetry: AdvisoryTelemetry | None = None,
        audit_trail: AdvisoryAuditTrail | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        default_model: str = "unknown",
    ) -> None:
        self.providers = tuple(providers)
        self.transport = transport or ChatCompletionsProvider()
        self.retry_policy = retry_policy or AdvisoryRetryPolicy()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.telemetry = telemetry if telemetry is not None else InMemoryAdvisoryTelemetry()
        self.audit_trail = audit_trail
        self.sleep_fn = sleep_fn
        self.default_model = default_model
        self.next_provider_index = 0

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: object) -> AdvisoryClient:
        params: dict[str, object] = {
            "providers": settings.advisory_providers(),
            "transport": ChatCompletionsProvider(timeout_seconds=settings.request_timeout_seconds),
            "retry_policy": AdvisoryRetryPolicy(
                max_retries=settings.advisory_max_retries,
                base_delay_seconds=settings.retry_base_delay_seconds,
            ),
            "default_model": settings.advisory_model,
        }
        params.update(overrides)
        return cls(**params)  # type: ignore[arg-type]

    @property
    def usable_providers(self) -> tuple[ProviderConfig, ...]:
        return tuple(provider for provider in self.providers if provider.is_usable)

    async def generate_advisory(self, request: AdvisoryRequest) -> AllocationAdvisory:
        built = self.prompt_builder.build(request)
        started = time.monotonic()
        usable = self.usable_providers

        if not usable:
            model, label = self._unconfigured_identity()
            advisory = self._finalize(build_offline_fallback(request), request)
            advisory = advisory.with_meta(model=model, provider=label, fallback_used=True)
            message = "No advisory providers configured"
            self._safe_record(
                AdvisoryCallRecord(
                    model=model,
                    provider=label,
                    status=CallStatus.SKIPPED,
                    latency_ms=0,
                    retries=0,
                    fallback_used=True,
                    error_message=message,
                )
            )
            self._safe_audit(request, CallStatus.SKIPPED, 0, built.prompt, advisory, message)
            logger.warning(
                "advisory_providers_unavailable",
                extra={"extra": {"account": request.account, "provider": label}},
            )
            return advisory

        retries = 0
        last_provider = usable[self.next_provider_index % len(usable)]
        last_error: AdvisoryProviderError | None = None

        for attempt in range(self.retry_policy.max_attempts):
            provider_index = (self.next_provider_index + attempt) % len(usable)
            provider = usable[provider_index]
            last_provider = provider
            try:
                reply = await self.transport.complete(
                    provider, system=built.system, prompt=built.prompt
                )
                advisory = self._finalize(self._parse_reply(reply), request)
            except AdvisoryProviderError as exc:
                last_error = exc
            except Exception as exc:  # noqa: BLE001
                last_error = AdvisoryProviderError(
                    f"unexpected provider failure: {type(exc).__name__}", kind=FailureKind.CLIENT
                )
            else:
                advisory = advisory.with_meta(
                    model=provider.model, provider=provider.label, fallback_used=False
                )
                self._safe_record(
                    AdvisoryCallRecord(
                        model=provider.model,
                        provider=provider.label,
                        status=CallStatus.SUCCESS,
                        latency_ms=int((time.monotonic() - started) * 1000),
                        retries=retries,
                        fallback_used=False,
                        input_tokens=reply.usage.prompt_tokens,
                        output_tokens=reply.usage.completion_tokens,
                        total_tokens=reply.usage.total_tokens,
                        rate_limit_remaining=reply.rate_limit_remaining,
                        rate_limit_reset_ms=reply.rate_limit_reset_ms,
                    )
                )
                self.next_provider_index = (provider_index + 1) % len(usable)
                self._safe_audit(
                    request,
                    CallStatus.SUCCESS,
                    int((time.monotonic() - started) * 1000),
                    built.prompt,
                    advisory,
                    None,
                )
                return advisory

            decision = self.retry_policy.decide(
                last_error.kind,
                attempt=attempt + 1,
                retry_after_header=last_error.retry_after,
            )
            logger.warning(
                "advisory_attempt_failed",
                extra={
                    "extra": {
                        "account": request.account,
                        "provider": provider.label,
                        "attempt": attempt + 1,
                        "kind": last_error.kind.value,
                        "status_code": last_error.status_code,
                        "will_retry": decision.retry,
                        "delay_seconds": decision.delay_seconds,
                    }
                },
            )
            self._safe_record(
                AdvisoryCallRecord(
                    model=provider.model,
                    provider=provider.label,
                    status=CallStatus.ERROR,
                    latency_ms=int((time.monotonic() - started) * 1000),
                    retries=retries,
                    fallback_used=not decision.retry,
                    error_message=str(last_error),
                )
            )
            if not decision.retry:
                break
            retries += 1
            get_instrumentation().counter(
                "advisory_retries_total", attrs={"kind": last_error.kind.value}
            )
            await self.sleep_fn(decision.delay_seconds)

        advisory = self._finalize(build_offline_fallback(request), request).with_meta(
            model=last_provider.model, provider=last_provider.label, fallback_used=True
        )
        get_instrumentation().counter("advisory_fallback_total")
        self._safe_audit(
            request,
            CallStatus.ERROR,
            int((time.monotonic() - started) * 1000),
            built.prompt,
            advisory,
            str(last_error) if last_error else None,
        )
        return advisory

    def _unconfigured_identity(self) -> tuple[str, str]:
        if self.providers:
            return self.providers[0].model, self.providers[0].label
        return self.default_model, OFFLINE_PROVIDER_LABEL

    def _parse_reply(self, reply: ProviderReply) -> AllocationAdvisory:
        try:
            envelope = AdvisoryEnvelope.model_validate_json(sanitize_advisory_json(reply.content))
        except (ValidationError, ValueError) as exc:
            raise AdvisoryProviderError(
                f"provider returned invalid JSON: {type(exc).__name__}", kind=FailureKind.PARSE
            ) from exc
        return advisory_from_envelope(envelope)

    def _finalize(self, advisory: AllocationAdvisory, request: AdvisoryRequest) -> AllocationAdvisory:
        try:
            return normalize_advisory(
                advisory, portfolio=request.portfolio, constraints=request.constraints
            )
        except ArithmeticError as exc:
            raise AdvisoryProviderError(
                f"advisory could not be normalized: {type(exc).__name__}", kind=FailureKind.PARSE
            ) from exc

    def _safe_record(self, call: AdvisoryCallRecord) -> None:
        try:
            self.telemetry.record(call)
        except Exception:  # noqa: BLE001
            logger.exception(
                "advisory_telemetry_record_failed",
                extra={"extra": {"provider": call.provider, "status": call.status.value}},
            )

    def _safe_audit(
        self,
        request: AdvisoryRequest,
        status: CallStatus,
        latency_ms: int,
        prompt: str,
        advisory: AllocationAdvisory,
        error_message: str | None,
    ) -> None:
        if self.audit_trail is None:
            return
        try:
            self.audit_trail.persist(
                account=request.account,
                delegate=request.delegate,
                status=status,
                latency_ms=latency_ms,
                prompt=prompt,
                advisory=advisory,
                error_message=error_message,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "advisory_audit_persist_failed",
                extra={"extra": {"account": request.account, "status": status.value}},
            )

    async def aclose(self) -> None:
        await self.transport.aclose()
