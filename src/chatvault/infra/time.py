"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def epoch_seconds_now() -> int:
    """Return the current time as whole epoch seconds."""
    return int(utc_now().timestamp())


def from_epoch_seconds(seconds: int) -> datetime:
    """Convert epoch seconds to a timezone-aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
