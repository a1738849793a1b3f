"""Redaction helpers for safe logging.

Message bodies, push names and contact names are personal data and never
reach the logs in clear. External identifiers are the keys an operator
needs to re-drive a failed item, so they pass through untouched.
"""

import re
from typing import Any

# Patterns that should never appear in logs
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"

IDENTIFIER_KEYS = frozenset(
    {
        "message_id",
        "chat_id",
        "contact_id",
        "group_id",
        "participant_id",
        "quoted_message_id",
        "external_id",
    }
)


def redact_string(value: str) -> str:
    """Redact PII patterns from a string."""
    result = _PHONE_PATTERN.sub(_REDACTED, value)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # For dicts, only log keys (structure), never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple, set, frozenset)):
        return f"list(len={len(value)})"
    # Enums log their value, anything else only its type name
    enum_value = getattr(value, "value", None)
    if isinstance(enum_value, (str, int)):
        return str(enum_value)
    return f"<{type(value).__name__}>"


def log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging.

    Identifier fields (see IDENTIFIER_KEYS) are kept verbatim, every other
    value is redacted.
    """
    context: dict[str, str] = {}
    for key, value in kwargs.items():
        if key in IDENTIFIER_KEYS and isinstance(value, str):
            context[key] = value
        else:
            context[key] = redact_value(value)
    return context
