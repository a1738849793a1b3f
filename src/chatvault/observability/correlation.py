"""Correlation ID management for tracing one request or one transport event."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

# Context variable for correlation ID - accessible across threads' own contexts
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id(prefix: str | None = None) -> str:
    """Generate a new correlation ID, optionally tagged with the event source."""
    cid = str(uuid.uuid4())
    return f"{prefix}:{cid}" if prefix else cid


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


@contextmanager
def correlation_scope(prefix: str | None = None) -> Iterator[str]:
    """Run a block under a fresh correlation ID and restore the previous one.

    Used around each transport event dispatch so every log line emitted
    while processing one batch shares an ID.
    """
    cid = generate_correlation_id(prefix)
    token = set_correlation_id(cid)
    try:
        yield cid
    finally:
        reset_correlation_id(token)
