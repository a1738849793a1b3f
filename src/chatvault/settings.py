"""Service configuration read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class DatabaseSettings:
    """Entity store connection pool bounds. The DSN itself is read by infra.db."""

    pool_min: int = 1
    pool_max: int = 10


@dataclass(frozen=True)
class WhatsAppSettings:
    """Transport selection and session persistence.

    Attributes:
        transport_factory: "module:callable" returning a Transport.
        session_dir: Directory holding the persisted credentials.
        pairing_file: When set, pairing challenges are rendered here as a QR code PNG.
        sync_full_history: Ask the transport for the full history backfill.
    """

    transport_factory: str | None = None
    session_dir: str = "./auth_info"
    pairing_file: str | None = None
    sync_full_history: bool = True


@dataclass(frozen=True)
class HistorySettings:
    idle_timeout_s: int = 60
    max_wait_s: int = 600
    poll_interval_s: int = 10


@dataclass(frozen=True)
class Settings:
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    whatsapp: WhatsAppSettings = field(default_factory=WhatsAppSettings)
    history: HistorySettings = field(default_factory=HistorySettings)


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from the environment.

    Raises:
        ValueError: If a variable holds an unreadable value.
    """
    env = os.environ if env is None else env

    database = DatabaseSettings(
        pool_min=_int(env, "DB_POOL_MIN", 1, minimum=1),
        pool_max=_int(env, "DB_POOL_MAX", 10, minimum=1),
    )
    if database.pool_max < database.pool_min:
        raise ValueError("DB_POOL_MAX must be >= DB_POOL_MIN")

    whatsapp = WhatsAppSettings(
        transport_factory=env.get("TRANSPORT_FACTORY") or None,
        session_dir=env.get("WHATSAPP_SESSION_DIR") or "./auth_info",
        pairing_file=env.get("WHATSAPP_PAIRING_FILE") or None,
        sync_full_history=_bool(env, "SYNC_FULL_HISTORY", True),
    )

    history = HistorySettings(
        idle_timeout_s=_int(env, "HISTORY_IDLE_TIMEOUT_S", 60, minimum=1),
        max_wait_s=_int(env, "HISTORY_MAX_WAIT_S", 600, minimum=1),
        poll_interval_s=_int(env, "HISTORY_POLL_INTERVAL_S", 10, minimum=1),
    )

    return Settings(database=database, whatsapp=whatsapp, history=history)
