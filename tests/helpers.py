"""Shared test helpers for chatvault tests.

In-memory stand-ins for the entity store, the transport and the reconnect
scheduler. These are NOT fixtures - they are regular classes that tests and
conftest.py build on.
"""

from __future__ import annotations

import copy
import itertools
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from chatvault.connection.transport import TransportConfig, TransportEvent
from chatvault.infra.store import ENTITY_SPECS, EntityType, Row
from chatvault.infra.time import utc_now

# Column defaults the migrations declare
_TABLE_DEFAULTS: dict[EntityType, dict[str, Any]] = {
    EntityType.CHAT: {
        "name": None,
        "is_archived": False,
        "is_pinned": False,
        "is_muted": False,
        "is_read_only": False,
        "unread_count": 0,
        "last_message_at": None,
        "last_message_preview": None,
        "total_message_count": 0,
    },
    EntityType.CONTACT: {"name": None, "nickname": None, "last_seen_at": None},
    EntityType.MESSAGE: {"is_deleted": False, "quoted_message_pk": None},
    EntityType.GROUP_METADATA: {
        "subject": None,
        "description": None,
        "announce": False,
        "restrict_mode": False,
        "is_community": False,
    },
    EntityType.GROUP_PARTICIPANT: {"role": "member", "is_active": True, "removed_at": None},
}


class InjectedFailure(Exception):
    pass


class InMemoryStore:
    """EntityStore over dicts, with the unique keys and triggers of the schema.

    fail_on(entity, key) makes every write touching that key raise, to
    exercise per-item error boundaries and transaction rollback.
    """

    def __init__(self) -> None:
        self.tables: dict[EntityType, dict[int, Row]] = {entity: {} for entity in EntityType}
        self._ids = itertools.count(1)
        self._failing: set[tuple[EntityType, tuple[Any, ...]]] = set()
        self.transactions = 0
        self.rollbacks = 0

    def fail_on(self, entity: EntityType, key: Mapping[str, Any]) -> None:
        self._failing.add((entity, self._key(entity, key)))

    def _key(self, entity: EntityType, key: Mapping[str, Any]) -> tuple[Any, ...]:
        spec = ENTITY_SPECS[entity]
        if set(key) != set(spec.key_columns):
            raise ValueError(f"{spec.table} is keyed by {spec.key_columns}, got {tuple(key)}")
        return tuple(key[col] for col in spec.key_columns)

    def _check_failure(self, entity: EntityType, key: tuple[Any, ...]) -> None:
        if (entity, key) in self._failing:
            raise InjectedFailure(f"injected failure for {entity.value} {key}")

    def _find(self, entity: EntityType, key: tuple[Any, ...]) -> Row | None:
        columns = ENTITY_SPECS[entity].key_columns
        for row in self.tables[entity].values():
            if tuple(row[col] for col in columns) == key:
                return row
        return None

    def find_or_create(
        self,
        entity: EntityType,
        key: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> tuple[Row, bool]:
        key_values = self._key(entity, key)
        self._check_failure(entity, key_values)
        existing = self._find(entity, key_values)
        if existing is not None:
            return dict(existing), False

        now = utc_now()
        row: Row = {
            "id": next(self._ids),
            **_TABLE_DEFAULTS[entity],
            **(defaults or {}),
            **key,
            "created_at": now,
            "updated_at": now,
        }
        if entity is EntityType.MESSAGE:
            chat = self.tables[EntityType.CHAT].get(row["chat_pk"])
            if chat is None:
                raise LookupError(f"chat_pk {row['chat_pk']} does not exist")
            chat["total_message_count"] += 1
        self.tables[entity][row["id"]] = row
        return dict(row), True

    def update(self, entity: EntityType, row: Row, fields: Mapping[str, Any]) -> Row:
        if not fields:
            return row
        stored = self.tables[entity].get(row["id"])
        if stored is None:
            raise LookupError(f"{entity.value} row id={row['id']} not found for update")
        columns = ENTITY_SPECS[entity].key_columns
        self._check_failure(entity, tuple(stored[col] for col in columns))
        stored.update(fields)
        stored["updated_at"] = utc_now()
        return dict(stored)

    def find_by_unique_key(self, entity: EntityType, key: Mapping[str, Any]) -> Row | None:
        row = self._find(entity, self._key(entity, key))
        return dict(row) if row is not None else None

    def run_in_transaction(self, fn: Callable[[InMemoryStore], Any]) -> Any:
        self.transactions += 1
        snapshot = copy.deepcopy(self.tables)
        try:
            return fn(self)
        except Exception:
            self.tables = snapshot
            self.rollbacks += 1
            raise

    def close(self) -> None:
        pass

    # Test accessors

    def rows(self, entity: EntityType) -> list[Row]:
        return [dict(row) for row in self.tables[entity].values()]

    def get(self, entity: EntityType, **key: Any) -> Row | None:
        return self.find_by_unique_key(entity, key)


class FakeSession:
    """Transport session whose events are emitted by the test."""

    def __init__(self, config: TransportConfig) -> None:
        self.config = config
        self.handlers: dict[TransportEvent, list[Callable[[Any], None]]] = defaultdict(list)
        self.ended = False

    def on(self, event: TransportEvent, handler: Callable[[Any], None]) -> None:
        self.handlers[event].append(handler)

    def end(self) -> None:
        self.ended = True

    def emit(self, event: TransportEvent, payload: Any) -> None:
        for handler in list(self.handlers[event]):
            handler(payload)

    def open(self) -> None:
        self.emit(TransportEvent.CONNECTION_STATE_CHANGED, {"connection": "open"})

    def close(self, status_code: int | None = 500) -> None:
        self.emit(
            TransportEvent.CONNECTION_STATE_CHANGED,
            {
                "connection": "close",
                "lastDisconnect": {"error": {"output": {"statusCode": status_code}}},
            },
        )


class FakeTransport:
    """Records every connect(); fail_next makes the next N connects raise."""

    session_class = FakeSession

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.fail_next = 0
        self.on_connect: Callable[[FakeSession], None] | None = None

    def connect(self, config: TransportConfig) -> FakeSession:
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("transport unavailable")
        session = self.session_class(config)
        if self.on_connect is not None:
            self.on_connect(session)
        self.sessions.append(session)
        return session

    @property
    def latest(self) -> FakeSession:
        return self.sessions[-1]


@dataclass
class FakeCall:
    delay_seconds: float
    fn: Callable[[], None]
    cancelled: bool = False
    ran: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Scheduler that only runs delayed calls when the test says so."""

    def __init__(self) -> None:
        self.calls: list[FakeCall] = []

    def call_later(self, delay_seconds: float, fn: Callable[[], None]) -> FakeCall:
        call = FakeCall(delay_seconds, fn)
        self.calls.append(call)
        return call

    @property
    def pending(self) -> list[FakeCall]:
        return [call for call in self.calls if not call.cancelled and not call.ran]

    def run_next(self) -> FakeCall:
        call = self.pending[0]
        call.ran = True
        call.fn()
        return call


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_message(
    message_id: str,
    chat_id: str = "5511999990001@s.whatsapp.net",
    *,
    text: str | None = "hello",
    content: dict[str, Any] | None = None,
    timestamp: Any = 1700000000,
    push_name: str | None = None,
    from_me: bool = False,
    participant: str | None = None,
) -> dict[str, Any]:
    """WebMessageInfo-shaped raw message event."""
    key: dict[str, Any] = {"remoteJid": chat_id, "id": message_id, "fromMe": from_me}
    if participant:
        key["participant"] = participant
    raw: dict[str, Any] = {
        "key": key,
        "message": content if content is not None else {"conversation": text},
        "messageTimestamp": timestamp,
    }
    if push_name:
        raw["pushName"] = push_name
    return raw
