from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from treasurybot.config import ProviderConfig
from treasurybot.security.redaction import sanitize_text
from treasurybot.services.retry import FailureKind

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 240
_EPOCH_RESET_THRESHOLD = 1_000_000_000


class AdvisoryProviderError(RuntimeError):
    """A single failed provider attempt, classified for the retry policy."""

    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind,
        status_code: int | None = None,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(frozen=True)
class ProviderReply:
    content: str
    latency_ms: int
    usage: TokenUsage
    rate_limit_remaining: float | None = None
    rate_limit_reset_ms: int | None = None


def _parse_number(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def _reset_ms(value: float | None) -> int | None:
    if value is None:
        return None
    if value > _EPOCH_RESET_THRESHOLD:
        # epoch milliseconds rather than a relative seconds window
        return max(0, round(value - time.time() * 1000))
    return round(value * 1000)


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


def _response_snippet(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT])


def classify_http_error(exc: httpx.HTTPError) -> AdvisoryProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return AdvisoryProviderError(f"provider timeout: {type(exc).__name__}", kind=FailureKind.TIMEOUT)
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        status = response.status_code
        if status == 429:
            kind = FailureKind.RATE_LIMIT
        elif status >= 500:
            kind = FailureKind.SERVER
        else:
            kind = FailureKind.CLIENT
        return AdvisoryProviderError(
            f"provider returned HTTP {status}: {_response_snippet(response)}",
            kind=kind,
            status_code=status,
            retry_after=response.headers.get("Retry-After"),
        )
    return AdvisoryProviderError(
        f"provider transport failure: {type(exc).__name__}", kind=FailureKind.NETWORK
    )


class ChatCompletionsProvider:
    """OpenAI-compatible chat completions transport with one pooled client per endpoint."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout=timeout_seconds, connect=min(5.0, timeout_seconds))
        self._transport = transport
        self._clients: dict[tuple[str, str], httpx.AsyncClient] = {}

    def _client_for(self, provider: ProviderConfig) -> httpx.AsyncClient:
        key = (provider.label, provider.base_url)
        client = self._clients.get(key)
        if client is None:
            headers = {"Content-Type": "application/json"}
            if provider.credential:
                headers["Authorization"] = f"Bearer {provider.credential}"
            client = httpx.AsyncClient(
                base_url=provider.base_url.rstrip("/"),
                timeout=self._timeout,
                headers=headers,
                transport=self._transport,
            )
            self._clients[key] = client
        return client

    async def complete(self, provider: ProviderConfig, *, system: str, prompt: str) -> ProviderReply:
        client = self._client_for(provider)
        payload = {
            "model": provider.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        started = time.monotonic()
        try:
            response = await client.post("/chat/completions", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc) from exc

        latency_ms = int((time.monotonic() - started) * 1000)
        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise AdvisoryProviderError(
                "provider returned a malformed completion body", kind=FailureKind.PARSE
            ) from exc
        if not isinstance(content, str) or not content.strip():
            raise AdvisoryProviderError("provider returned an empty response", kind=FailureKind.PARSE)

        raw_usage = body.get("usage") if isinstance(body, dict) else None
        usage = TokenUsage()
        if isinstance(raw_usage, dict):
            usage = TokenUsage(
                prompt_tokens=_optional_int(raw_usage.get("prompt_tokens")),
                completion_tokens=_optional_int(raw_usage.get("completion_tokens")),
                total_tokens=_optional_int(raw_usage.get("total_tokens")),
            )

        return ProviderReply(
            content=content,
            latency_ms=latency_ms,
            usage=usage,
            rate_limit_remaining=_parse_number(response.headers.get("x-ratelimit-remaining")),
            rate_limit_reset_ms=_reset_ms(_parse_number(response.headers.get("x-ratelimit-reset"))),
        )

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
        logger.debug("advisory_provider_clients_closed", extra={"extra": {"count": len(clients)}})
