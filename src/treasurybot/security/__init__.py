from treasurybot.security.redaction import REDACTED, redact_data, sanitize_mapping, sanitize_text

__all__ = ["REDACTED", "redact_data", "sanitize_mapping", "sanitize_text"]
