from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import StrEnum


class FailureKind(StrEnum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    CLIENT = "client"
    NETWORK = "network"
    PARSE = "parse"


RETRYABLE_KINDS = frozenset({FailureKind.TIMEOUT, FailureKind.RATE_LIMIT, FailureKind.SERVER})


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float
    used_retry_after: bool = False


def parse_retry_after_seconds(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    candidate = value.strip()
    try:
        seconds = float(candidate)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass

    try:
        parsed = parsedate_to_datetime(candidate)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return max(0.0, (parsed - datetime.now(UTC)).total_seconds())


def _bounded(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


@dataclass(frozen=True)
class AdvisoryRetryPolicy:
    """Backoff schedule for advisory provider calls.

    An explicit Retry-After hint wins and is bounded to [1, 60] seconds. Without a
    hint, rate limits back off as ``base * 2^(n-1)`` bounded to [2, 60] seconds and
    other retryable failures as ``base * 1.5^(n-1)`` bounded to [1, 30] seconds.
    """

    max_retries: int = 3
    base_delay_seconds: float = 5.0
    retry_after_bounds: tuple[float, float] = (1.0, 60.0)
    rate_limit_bounds: tuple[float, float] = (2.0, 60.0)
    generic_bounds: tuple[float, float] = (1.0, 30.0)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_delay(
        self,
        kind: FailureKind,
        retry_number: int,
        *,
        retry_after_header: str | None = None,
    ) -> tuple[float, bool]:
        retry_after = parse_retry_after_seconds(retry_after_header)
        if retry_after is not None:
            return _bounded(retry_after, *self.retry_after_bounds), True

        exponent = max(1, retry_number) - 1
        if kind is FailureKind.RATE_LIMIT:
            return _bounded(self.base_delay_seconds * (2**exponent), *self.rate_limit_bounds), False
        return _bounded(self.base_delay_seconds * (1.5**exponent), *self.generic_bounds), False

    def decide(
        self,
        kind: FailureKind,
        *,
        attempt: int,
        retry_after_header: str | None = None,
    ) -> RetryDecision:
        """Decide whether ``attempt`` (1-based) may be followed by another try."""
        if kind not in RETRYABLE_KINDS or attempt >= self.max_attempts:
            return RetryDecision(retry=False, delay_seconds=0.0)
        delay, used_hint = self.compute_delay(
            kind, attempt, retry_after_header=retry_after_header
        )
        return RetryDecision(retry=True, delay_seconds=delay, used_retry_after=used_hint)
