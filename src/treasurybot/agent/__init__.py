from treasurybot.agent.advisory_client import AdvisoryClient, build_offline_fallback
from treasurybot.agent.contracts import AdvisoryConstraints, AdvisoryRequest
from treasurybot.agent.guardrails import (
    EXECUTION_RULES,
    PREVIEW_RULES,
    GuardrailPolicy,
    GuardrailRule,
    decide_allocations,
    normalize_advisory,
)
from treasurybot.agent.provider import AdvisoryProviderError, ChatCompletionsProvider
from treasurybot.agent.telemetry import AdvisoryAuditTrail, InMemoryAdvisoryTelemetry

__all__ = [
    "AdvisoryAuditTrail",
    "AdvisoryClient",
    "AdvisoryConstraints",
    "AdvisoryProviderError",
    "AdvisoryRequest",
    "ChatCompletionsProvider",
    "EXECUTION_RULES",
    "GuardrailPolicy",
    "GuardrailRule",
    "InMemoryAdvisoryTelemetry",
    "PREVIEW_RULES",
    "build_offline_fallback",
    "decide_allocations",
    "normalize_advisory",
]
