from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any

from treasurybot.logging_context import get_logging_context
from treasurybot.security.redaction import redact_data

# logger name -> (override env var, level when verbose, level otherwise)
LIBRARY_LOGGERS: dict[str, tuple[str, int, int]] = {
    "httpx": ("HTTPX_LOG_LEVEL", logging.DEBUG, logging.INFO),
    "httpcore": ("HTTPCORE_LOG_LEVEL", logging.DEBUG, logging.WARNING),
    "opentelemetry": ("OTEL_LOG_LEVEL", logging.INFO, logging.WARNING),
}


class JsonFormatter(logging.Formatter):
    """One redacted JSON object per record.

    Fields passed as ``extra={"extra": {...}}`` are merged at the top level,
    followed by the active cycle context (run, cycle, account, delegate, mode).
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            payload.update(fields)
        payload.update(get_logging_context())

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = "" if exc_value is None else str(exc_value)
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_data(payload), default=str)


def _level_from(raw: str | int | None, default: int) -> int:
    if isinstance(raw, int):
        return raw
    if raw is None or not str(raw).strip():
        return default
    resolved = logging.getLevelName(str(raw).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None) -> None:
    """Send JSON logs to stderr; stdout stays reserved for command output."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)

    resolved = _level_from(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)
    root.setLevel(resolved)

    verbose = resolved <= logging.DEBUG
    for name, (env_name, verbose_level, quiet_level) in LIBRARY_LOGGERS.items():
        default = verbose_level if verbose else quiet_level
        logging.getLogger(name).setLevel(_level_from(os.getenv(env_name), default))
