from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from hashlib import sha256
from typing import Any, Protocol

from treasurybot.domain.models import AllocationAdvisory, to_jsonable
from treasurybot.observability import get_instrumentation
from treasurybot.security.redaction import redact_data, sanitize_text

logger = logging.getLogger(__name__)

TELEMETRY_HISTORY_LIMIT = 50


class CallStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class AdvisoryCallRecord:
    model: str
    provider: str
    status: CallStatus
    latency_ms: int
    retries: int
    fallback_used: bool
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error_message: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    rate_limit_remaining: float | None = None
    rate_limit_reset_ms: int | None = None


@dataclass(frozen=True)
class TelemetrySummary:
    total_calls: int
    success_count: int
    error_count: int
    skipped_count: int
    fallback_count: int
    average_latency_ms: float
    last_success_at: datetime | None
    last_error_at: datetime | None
    last_error_message: str | None


class AdvisoryTelemetry(Protocol):
    def record(self, call: AdvisoryCallRecord) -> None:
        ...


class InMemoryAdvisoryTelemetry:
    """Bounded call history with a rolling summary."""

    def __init__(self, *, limit: int = TELEMETRY_HISTORY_LIMIT) -> None:
        self._calls: deque[AdvisoryCallRecord] = deque(maxlen=max(1, limit))

    def record(self, call: AdvisoryCallRecord) -> None:
        self._calls.appendleft(call)
        instrumentation = get_instrumentation()
        attrs = {"provider": call.provider, "status": call.status.value}
        instrumentation.counter("advisory_calls_total", attrs=attrs)
        instrumentation.histogram("advisory_call_latency_ms", float(call.latency_ms), attrs=attrs)

    def recent(self) -> list[AdvisoryCallRecord]:
        return list(self._calls)

    def summary(self) -> TelemetrySummary:
        calls = list(self._calls)
        successes = [c for c in calls if c.status is CallStatus.SUCCESS]
        errors = [c for c in calls if c.status is CallStatus.ERROR]
        average = sum(c.latency_ms for c in calls) / len(calls) if calls else 0.0
        return TelemetrySummary(
            total_calls=len(calls),
            success_count=len(successes),
            error_count=len(errors),
            skipped_count=sum(1 for c in calls if c.status is CallStatus.SKIPPED),
            fallback_count=sum(1 for c in calls if c.fallback_used),
            average_latency_ms=round(average, 2),
            last_success_at=successes[0].recorded_at if successes else None,
            last_error_at=errors[0].recorded_at if errors else None,
            last_error_message=errors[0].error_message if errors else None,
        )


def store_compact_text(text: str, *, max_chars: int) -> dict[str, object]:
    digest = sha256(text.encode("utf-8")).hexdigest()
    if len(text) <= max_chars:
        return {"truncated": False, "sha256": digest, "chars": len(text), "text": text}
    head_len = max(0, max_chars // 2)
    tail_len = max(0, max_chars - head_len)
    return {
        "truncated": True,
        "sha256": digest,
        "chars": len(text),
        "head": text[:head_len],
        "tail": text[-tail_len:] if tail_len > 0 else "",
    }


@dataclass(frozen=True)
class AdvisoryAuditEntry:
    account: str
    delegate: str
    model: str
    provider: str
    status: CallStatus
    latency_ms: int
    fallback_used: bool
    prompt: dict[str, object]
    response: dict[str, object]
    evaluation: dict[str, Any] | None
    error_message: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class AdvisoryAuditTrail:
    """Keeps redacted, compacted prompt/response pairs for each advisory."""

    def __init__(self, *, max_payload_chars: int = 4000, limit: int = TELEMETRY_HISTORY_LIMIT) -> None:
        self.max_payload_chars = max_payload_chars
        self._entries: deque[AdvisoryAuditEntry] = deque(maxlen=max(1, limit))

    def persist(
        self,
        *,
        account: str,
        delegate: str,
        status: CallStatus,
        latency_ms: int,
        prompt: str,
        advisory: AllocationAdvisory,
        error_message: str | None = None,
    ) -> AdvisoryAuditEntry:
        response_text = json.dumps(
            redact_data(to_jsonable(advisory)), sort_keys=True, separators=(",", ":")
        )
        entry = AdvisoryAuditEntry(
            account=account,
            delegate=delegate,
            model=advisory.model or "unknown",
            provider=advisory.provider or "unknown",
            status=status,
            latency_ms=latency_ms,
            fallback_used=advisory.fallback_used,
            prompt=store_compact_text(sanitize_text(prompt), max_chars=self.max_payload_chars),
            response=store_compact_text(response_text, max_chars=self.max_payload_chars),
            evaluation=to_jsonable(advisory.evaluation) if advisory.evaluation else None,
            error_message=sanitize_text(error_message) if error_message else None,
        )
        self._entries.appendleft(entry)
        return entry

    def entries(self) -> list[AdvisoryAuditEntry]:
        return list(self._entries)
