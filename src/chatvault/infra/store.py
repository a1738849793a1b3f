"""Entity store - transactional find-or-create persistence over Postgres.

Uses raw SQL with psycopg2 (no ORM). Every entity has a unique external key;
find_or_create relies on INSERT ... ON CONFLICT DO NOTHING so duplicate or
concurrent delivery of the same entity resolves to one row:

  1. INSERT the key + defaults, ON CONFLICT (key) DO NOTHING RETURNING *.
  2. A returned row means this call created it -> (row, True).
  3. No row means it already existed -> SELECT by key -> (row, False).

Rows are plain dicts keyed by column name.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, TypeVar

from psycopg2 import sql
from psycopg2.extensions import cursor as PgCursor
from psycopg2.extras import Json
from psycopg2.pool import ThreadedConnectionPool

from .db import pooled_txn

T = TypeVar("T")
Row = dict[str, Any]


class EntityType(str, Enum):
    """Persisted entity kinds."""

    CHAT = "chat"
    CONTACT = "contact"
    MESSAGE = "message"
    GROUP_METADATA = "group_metadata"
    GROUP_PARTICIPANT = "group_participant"


@dataclass(frozen=True)
class EntitySpec:
    """Table binding of an entity type."""

    table: str
    key_columns: tuple[str, ...]
    json_columns: frozenset[str] = frozenset()


ENTITY_SPECS: dict[EntityType, EntitySpec] = {
    EntityType.CHAT: EntitySpec("chats", ("chat_id",), frozenset({"metadata"})),
    EntityType.CONTACT: EntitySpec("contacts", ("contact_id",), frozenset({"metadata"})),
    EntityType.MESSAGE: EntitySpec(
        "messages",
        ("message_id",),
        frozenset(
            {"mentions", "poll_data", "location_data", "contact_data", "raw_data"}
        ),
    ),
    EntityType.GROUP_METADATA: EntitySpec(
        "group_metadata", ("chat_pk",), frozenset({"metadata"})
    ),
    EntityType.GROUP_PARTICIPANT: EntitySpec(
        "group_participants", ("group_metadata_id", "participant_id")
    ),
}


class EntityStore(Protocol):
    """Transactional entity store with unique-key find-or-create."""

    def find_or_create(
        self,
        entity: EntityType,
        key: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> tuple[Row, bool]:
        """Insert if absent, else return existing. Returns (row, created)."""
        ...

    def update(self, entity: EntityType, row: Row, fields: Mapping[str, Any]) -> Row:
        """Apply fields to an existing row and return the updated row."""
        ...

    def find_by_unique_key(self, entity: EntityType, key: Mapping[str, Any]) -> Row | None:
        """Return the row for a unique key, or None."""
        ...

    def run_in_transaction(self, fn: Callable[["EntityStore"], T]) -> T:
        """Run fn with a store bound to one transaction; commit or roll back."""
        ...


def _check_key(spec: EntitySpec, key: Mapping[str, Any]) -> None:
    if set(key) != set(spec.key_columns):
        raise ValueError(
            f"{spec.table} is keyed by {spec.key_columns}, got {tuple(key)}"
        )


def _adapt(spec: EntitySpec, column: str, value: Any) -> Any:
    if column in spec.json_columns and value is not None:
        return Json(value)
    return value


def _where_key(spec: EntitySpec) -> sql.Composable:
    return sql.SQL(" AND ").join(
        sql.SQL("{} = %s").format(sql.Identifier(col)) for col in spec.key_columns
    )


class CursorStore:
    """Entity store bound to one open cursor (one transaction).

    The caller owns the transaction (with txn() as cur:). Nested
    run_in_transaction calls join it.
    """

    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    def find_or_create(
        self,
        entity: EntityType,
        key: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> tuple[Row, bool]:
        spec = ENTITY_SPECS[entity]
        _check_key(spec, key)
        values = {**(defaults or {}), **key}
        columns = list(values)

        query = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) "
            "ON CONFLICT ({keys}) DO NOTHING RETURNING *"
        ).format(
            table=sql.Identifier(spec.table),
            columns=sql.SQL(", ").join(sql.Identifier(col) for col in columns),
            values=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            keys=sql.SQL(", ").join(sql.Identifier(col) for col in spec.key_columns),
        )
        self._cur.execute(query, [_adapt(spec, col, values[col]) for col in columns])
        row = self._cur.fetchone()
        if row is not None:
            return dict(row), True

        existing = self.find_by_unique_key(entity, key)
        if existing is None:
            # Conflict on the key but the row is gone: deleted concurrently.
            raise LookupError(f"{spec.table} row for {dict(key)} vanished during find_or_create")
        return existing, False

    def update(self, entity: EntityType, row: Row, fields: Mapping[str, Any]) -> Row:
        if not fields:
            return row
        spec = ENTITY_SPECS[entity]
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(col)) for col in fields
        )
        query = sql.SQL(
            "UPDATE {table} SET {assignments}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(table=sql.Identifier(spec.table), assignments=assignments)
        params = [_adapt(spec, col, value) for col, value in fields.items()]
        params.append(row["id"])
        self._cur.execute(query, params)
        updated = self._cur.fetchone()
        if updated is None:
            raise LookupError(f"{spec.table} row id={row['id']} not found for update")
        return dict(updated)

    def find_by_unique_key(self, entity: EntityType, key: Mapping[str, Any]) -> Row | None:
        spec = ENTITY_SPECS[entity]
        _check_key(spec, key)
        query = sql.SQL("SELECT * FROM {table} WHERE {where}").format(
            table=sql.Identifier(spec.table), where=_where_key(spec)
        )
        self._cur.execute(query, [key[col] for col in spec.key_columns])
        row = self._cur.fetchone()
        return dict(row) if row is not None else None

    def run_in_transaction(self, fn: Callable[[EntityStore], T]) -> T:
        return fn(self)


class PostgresStore:
    """Entity store over a psycopg2 connection pool.

    Each call outside run_in_transaction is its own short transaction on a
    pooled connection, so no row lock outlives a single store round-trip.
    """

    def __init__(self, pool: ThreadedConnectionPool) -> None:
        self._pool = pool

    def find_or_create(
        self,
        entity: EntityType,
        key: Mapping[str, Any],
        defaults: Mapping[str, Any] | None = None,
    ) -> tuple[Row, bool]:
        with pooled_txn(self._pool) as cur:
            return CursorStore(cur).find_or_create(entity, key, defaults)

    def update(self, entity: EntityType, row: Row, fields: Mapping[str, Any]) -> Row:
        if not fields:
            return row
        with pooled_txn(self._pool) as cur:
            return CursorStore(cur).update(entity, row, fields)

    def find_by_unique_key(self, entity: EntityType, key: Mapping[str, Any]) -> Row | None:
        with pooled_txn(self._pool) as cur:
            return CursorStore(cur).find_by_unique_key(entity, key)

    def run_in_transaction(self, fn: Callable[[EntityStore], T]) -> T:
        with pooled_txn(self._pool) as cur:
            return fn(CursorStore(cur))

    def close(self) -> None:
        """Close every pooled connection."""
        self._pool.closeall()
