from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = {
    "API_KEY",
    "APIKEY",
    "SECRET",
    "CREDENTIAL",
    "AUTHORIZATION",
    "TOKEN",
    "PASSWORD",
    "PRIVATE_KEY",
    "ADVISORY_API_KEY",
}

_SENSITIVE_PARTS = tuple(part.casefold() for part in SENSITIVE_KEYS)
_TOKEN_COUNT_KEYS = {"input_tokens", "output_tokens", "total_tokens", "prompt_tokens", "completion_tokens"}

_PLAIN_SECRET_PATTERNS = (
    re.compile(r"(?im)(authorization\s*[:=]\s*)(bearer\s+)?([^\s,;]+)"),
    re.compile(r"(?im)(advisory_api_key\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(private_key\s*[:=]\s*)([^\s,;]+)"),
)

_JSON_KEY_VALUE_PATTERN = re.compile(
    r'("(?:api_key|apiKey|secret|credential|password|token|authorization|private_key)"\s*:\s*")([^"\\]*)(")',
    re.IGNORECASE,
)
_BEARER_TOKEN_PATTERN = re.compile(r"(?i)\b(sk-[A-Za-z0-9_-]{8,})")


def _is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    if normalized in _TOKEN_COUNT_KEYS:
        return False
    return any(part in normalized for part in _SENSITIVE_PARTS)


def _mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    if len(value) <= 2:
        return "*" * len(value)
    return f"{'*' * (len(value) - 2)}{value[-2:]}"


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        key_str = str(key)
        if _is_sensitive_key(key_str):
            sanitized[key_str] = _mask_secret(str(value)) if value is not None else REDACTED
            continue

        if isinstance(value, Mapping):
            sanitized[key_str] = sanitize_mapping(value)
        elif isinstance(value, list):
            sanitized[key_str] = [redact_data(item) for item in value]
        elif isinstance(value, tuple):
            sanitized[key_str] = tuple(redact_data(item) for item in value)
        else:
            sanitized[key_str] = redact_data(value)
    return sanitized


def _redact_match(match: re.Match[str]) -> str:
    prefix = match.group(1)
    optional_scheme = ""
    if match.lastindex and match.lastindex >= 3:
        optional_scheme = match.group(2) or ""
    return f"{prefix}{optional_scheme}[REDACTED]"


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    try:
        redacted = str(text)
        for secret in known_secrets:
            if secret:
                redacted = redacted.replace(secret, _mask_secret(str(secret)))

        for pattern in _PLAIN_SECRET_PATTERNS:
            redacted = pattern.sub(_redact_match, redacted)

        redacted = _JSON_KEY_VALUE_PATTERN.sub(
            lambda m: f"{m.group(1)}{_mask_secret(m.group(2))}{m.group(3)}", redacted
        )
        return _BEARER_TOKEN_PATTERN.sub(lambda m: _mask_secret(m.group(1)), redacted)
    except Exception:  # noqa: BLE001
        return REDACTED


def redact_data(value: Any) -> Any:
    try:
        if isinstance(value, Mapping):
            return sanitize_mapping(value)
        if isinstance(value, list):
            return [redact_data(item) for item in value]
        if isinstance(value, tuple):
            return tuple(redact_data(item) for item in value)
        if isinstance(value, str):
            return sanitize_text(value)
        return value
    except Exception:  # noqa: BLE001
        return REDACTED
