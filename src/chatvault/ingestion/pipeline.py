"""Ingestion pipeline - transport events to entity store writes.

Binds every consumed transport event to its ingestion function and
registers the bindings as persistent subscriptions on a ConnectionManager,
so they survive reconnects. Each dispatch runs under its own correlation
id and never raises into the transport.
"""

from __future__ import annotations

from typing import Any, Callable

from chatvault.connection.manager import ConnectionManager
from chatvault.connection.transport import EventHandler, TransportEvent
from chatvault.infra.store import EntityStore
from chatvault.observability.correlation import correlation_scope
from chatvault.observability.logging import get_logger

from .history import BatchSummary, HistoryImporter
from .messages import ingest_message_events
from .results import BatchResult
from .updates import (
    apply_chat_updates,
    apply_contact_updates,
    apply_group_updates,
    apply_participants_update,
)

logger = get_logger(__name__)


def _failures(result: Any) -> BatchResult | None:
    """Per-item counters of a handler result; history batches report their messages."""
    if isinstance(result, BatchSummary):
        return result.messages
    if isinstance(result, BatchResult):
        return result
    return None


def _items(event: Any, key: str) -> list[Any]:
    """Event payloads are either a bare list or {key: [...], ...}."""
    if isinstance(event, dict):
        return list(event.get(key) or ())
    if isinstance(event, (list, tuple)):
        return list(event)
    return []


class IngestionPipeline:
    """Ingestion entry points, one per transport event."""

    def __init__(self, store: EntityStore, history: HistoryImporter | None = None) -> None:
        self._store = store
        self.history = history or HistoryImporter(store)

    def handle_messages(self, event: Any) -> BatchResult:
        """messages.upsert: {"messages": [...], "type": "notify" | "append"}."""
        messages = _items(event, "messages")
        upsert_type = event.get("type") if isinstance(event, dict) else None
        logger.info(
            "processing message upsert",
            extra={"extra_fields": {"count": len(messages), "type": upsert_type}},
        )
        return ingest_message_events(self._store, messages)

    def handle_chats(self, event: Any) -> BatchResult:
        updates = _items(event, "chats")
        logger.info("processing chat updates", extra={"extra_fields": {"count": len(updates)}})
        return apply_chat_updates(self._store, updates)

    def handle_contacts(self, event: Any) -> BatchResult:
        updates = _items(event, "contacts")
        logger.info("processing contact updates", extra={"extra_fields": {"count": len(updates)}})
        return apply_contact_updates(self._store, updates)

    def handle_groups(self, event: Any) -> BatchResult:
        updates = _items(event, "groups")
        logger.info("processing group updates", extra={"extra_fields": {"count": len(updates)}})
        return apply_group_updates(self._store, updates)

    def handle_participants(self, event: Any) -> BatchResult:
        return apply_participants_update(self._store, event)

    def handle_history(self, event: Any) -> BatchSummary | None:
        return self.history.handle_event(event)

    def handlers(self) -> dict[TransportEvent, Callable[[Any], Any]]:
        return {
            TransportEvent.MESSAGES_RECEIVED: self.handle_messages,
            TransportEvent.CHATS_CHANGED: self.handle_chats,
            TransportEvent.CONTACTS_CHANGED: self.handle_contacts,
            TransportEvent.GROUPS_CHANGED: self.handle_groups,
            TransportEvent.GROUP_MEMBERSHIP_CHANGED: self.handle_participants,
            TransportEvent.HISTORY_BATCH_RECEIVED: self.handle_history,
        }

    def dispatcher(self, event_type: TransportEvent) -> EventHandler:
        """Wrap a handler with a correlation scope and a last-resort boundary."""
        handler = self.handlers()[event_type]

        def dispatch(event: Any) -> None:
            with correlation_scope(prefix=event_type.value):
                try:
                    result = handler(event)
                except Exception:
                    logger.exception(
                        "event handler failed",
                        extra={"extra_fields": {"event": event_type.value}},
                    )
                    return
                failures = _failures(result)
                if failures is not None and failures.failed:
                    logger.warning(
                        "event processed with failures",
                        extra={
                            "extra_fields": {
                                "event": event_type.value,
                                "failed_ids": list(failures.failed_ids),
                                **failures.as_log_fields(),
                            }
                        },
                    )

        return dispatch

    def register(
        self,
        manager: ConnectionManager,
        events: tuple[TransportEvent, ...] | None = None,
    ) -> None:
        """Register persistent subscriptions for the given (default: all) events."""
        for event_type in events or tuple(self.handlers()):
            manager.register_persistent(event_type, self.dispatcher(event_type))
