"""Redaction for log context. Guest and card data never reach the logs."""

import re
from typing import Any

_CARD_PATTERN = re.compile(r"\b(?:\d[ -]?){13,19}\b")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
# Stripe payment method / client secret tokens
_SECRET_TOKEN_PATTERN = re.compile(r"\b(?:pm|tok|seti)_[A-Za-z0-9]+|\bpi_[A-Za-z0-9]+_secret_[A-Za-z0-9]+")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    result = _SECRET_TOKEN_PATTERN.sub(_REDACTED, value)
    result = _CARD_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return _PHONE_PATTERN.sub(_REDACTED, result)


def redact_value(value: Any) -> Any:
    """Make a single value safe to log.

    Numbers and booleans pass through unchanged so amounts stay queryable;
    containers are reduced to their shape.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        return f"dict(keys={sorted(value.keys())})"
    if isinstance(value, (list, tuple, set)):
        return f"list(len={len(value)})"
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, Any]:
    """Build a context dict for ``extra={"extra_fields": ...}``."""
    return {k: redact_value(v) for k, v in kwargs.items()}
