from __future__ import annotations

import json
import logging
import sys

import pytest

from treasurybot.logging_context import get_logging_context, with_cycle_context, with_logging_context
from treasurybot.logging_utils import JsonFormatter, setup_logging
from treasurybot.security.redaction import REDACTED, redact_data, sanitize_mapping, sanitize_text

FAKE_KEY = "sk-or-v1-abcdefghijklmnop"


def _record(msg: str, *args, extra: dict | None = None, exc_info=None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="treasurybot.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )
    if extra is not None:
        record.extra = extra
    return record


def test_sanitize_mapping_masks_sensitive_keys_but_keeps_token_counts() -> None:
    sanitized = sanitize_mapping(
        {
            "ADVISORY_API_KEY": FAKE_KEY,
            "nested": {"Authorization": f"Bearer {FAKE_KEY}", "total_tokens": 18},
            "items": [{"password": "hunter22"}],
        }
    )

    assert sanitized["ADVISORY_API_KEY"] != FAKE_KEY
    assert sanitized["ADVISORY_API_KEY"].startswith("sk-o")
    assert FAKE_KEY not in sanitized["nested"]["Authorization"]
    assert sanitized["nested"]["total_tokens"] == 18
    assert sanitized["items"][0]["password"] == "******22"


def test_sanitize_text_redacts_headers_and_inline_keys() -> None:
    text = f'Authorization: Bearer {FAKE_KEY} body={{"apiKey": "{FAKE_KEY}"}} raw {FAKE_KEY}'

    sanitized = sanitize_text(text)

    assert FAKE_KEY not in sanitized
    assert "Authorization: Bearer [REDACTED]" in sanitized


def test_sanitize_text_masks_known_secrets() -> None:
    assert "plain-secret-value" not in sanitize_text(
        "leaked plain-secret-value", known_secrets=["plain-secret-value"]
    )


def test_redact_data_passes_through_non_strings() -> None:
    assert redact_data(42) == 42
    assert redact_data(None) is None
    assert redact_data((FAKE_KEY,))[0] != FAKE_KEY
    assert REDACTED == "***REDACTED***"


def test_json_formatter_merges_extra_and_context() -> None:
    formatter = JsonFormatter()

    with with_cycle_context("cycle-1", account="0xabc", mode="execution"):
        output = json.loads(formatter.format(_record("cycle_done", extra={"total": "5.00"})))

    assert output["message"] == "cycle_done"
    assert output["total"] == "5.00"
    assert output["cycle_id"] == "cycle-1"
    assert output["account"] == "0xabc"
    assert output["mode"] == "execution"
    assert "delegate" not in output


def test_json_formatter_redacts_secrets_and_reports_exceptions() -> None:
    formatter = JsonFormatter()
    try:
        raise ValueError("boom")
    except ValueError:
        exc_info = sys.exc_info()

    output = json.loads(formatter.format(_record("Authorization: Bearer %s", FAKE_KEY, exc_info=exc_info)))

    assert FAKE_KEY not in json.dumps(output)
    assert output["error_type"] == "ValueError"
    assert output["error_message"] == "boom"
    assert "Traceback" in output["traceback"]


def test_logging_context_is_restored_after_exit() -> None:
    with with_logging_context(run_id="run-1"):
        with with_logging_context(run_id="run-2", account=None):
            assert get_logging_context() == {"run_id": "run-2"}
        assert get_logging_context() == {"run_id": "run-1"}
    assert get_logging_context() == {}


def test_setup_logging_installs_json_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    saved_httpx = logging.getLogger("httpx").level
    saved_httpcore = logging.getLogger("httpcore").level
    saved_otel = logging.getLogger("opentelemetry").level
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "error")
    monkeypatch.delenv("HTTPCORE_LOG_LEVEL", raising=False)
    monkeypatch.delenv("OTEL_LOG_LEVEL", raising=False)
    try:
        setup_logging("debug")

        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("httpx").level == logging.ERROR
        assert logging.getLogger("httpcore").level == logging.DEBUG
        assert logging.getLogger("opentelemetry").level == logging.INFO

        setup_logging("not-a-level")
        assert root.level == logging.INFO
        assert logging.getLogger("opentelemetry").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        logging.getLogger("httpx").setLevel(saved_httpx)
        logging.getLogger("httpcore").setLevel(saved_httpcore)
        logging.getLogger("opentelemetry").setLevel(saved_otel)
