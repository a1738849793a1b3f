"""Transport contract - the already-authenticated messaging connection.

The wire protocol lives outside this package. A transport opens a session,
emits typed events to registered handlers and is ended explicitly. Event
names and payload shapes follow the WhatsApp Web socket events.

The concrete transport is selected by import path (TRANSPORT_FACTORY), the
same way the task backend is selected by name from the environment.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

# DisconnectReason.loggedOut on the WhatsApp Web socket
LOGGED_OUT_STATUS = 401

EventHandler = Callable[[Any], None]


class TransportEvent(str, Enum):
    """Events consumed from the transport."""

    CREDENTIALS_UPDATED = "creds.update"
    CONNECTION_STATE_CHANGED = "connection.update"
    MESSAGES_RECEIVED = "messages.upsert"
    CHATS_CHANGED = "chats.update"
    CONTACTS_CHANGED = "contacts.update"
    GROUPS_CHANGED = "groups.update"
    GROUP_MEMBERSHIP_CHANGED = "group-participants.update"
    HISTORY_BATCH_RECEIVED = "messaging-history.set"


@dataclass(frozen=True)
class TransportConfig:
    """Options handed to Transport.connect()."""

    credentials: Any = None
    sync_full_history: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class TransportSession(Protocol):
    """One live connection instance."""

    def on(self, event: TransportEvent, handler: EventHandler) -> None:
        """Attach a handler for an event type."""
        ...

    def end(self) -> None:
        """Close the session."""
        ...


class Transport(Protocol):
    """Factory of sessions."""

    def connect(self, config: TransportConfig) -> TransportSession:
        """Start opening a session; state changes arrive as events."""
        ...


@dataclass(frozen=True)
class ConnectionUpdate:
    """A connection-state event: open/close/connecting plus extras."""

    connection: str | None = None
    status_code: int | None = None
    pairing_challenge: str | None = None

    @property
    def is_open(self) -> bool:
        return self.connection == "open"

    @property
    def is_closed(self) -> bool:
        return self.connection == "close"

    @property
    def is_logged_out(self) -> bool:
        return self.is_closed and self.status_code == LOGGED_OUT_STATUS

    @classmethod
    def from_event(cls, event: Any) -> ConnectionUpdate:
        """Read a connection.update payload.

        The close status sits in lastDisconnect.error.output.statusCode
        (Boom error) or directly in lastDisconnect.statusCode.
        """
        if isinstance(event, ConnectionUpdate):
            return event
        event = event or {}
        last = event.get("lastDisconnect") or {}
        error = last.get("error") or {}
        status = None
        if isinstance(error, dict):
            status = (error.get("output") or {}).get("statusCode")
        if status is None:
            status = last.get("statusCode", event.get("statusCode"))
        try:
            status_code = int(status) if status is not None else None
        except (TypeError, ValueError):
            status_code = None
        return cls(
            connection=event.get("connection"),
            status_code=status_code,
            pairing_challenge=event.get("qr") or None,
        )


def load_transport(path: str) -> Transport:
    """Build the transport named by a "module:callable" import path.

    Raises:
        ValueError: If the path is malformed.
        ImportError / AttributeError: If it cannot be resolved.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"TRANSPORT_FACTORY must look like 'module:callable', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()
