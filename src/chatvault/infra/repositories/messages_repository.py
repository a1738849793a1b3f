"""Messages repository - chat history pages and full-text search.

Uses raw SQL with psycopg2 (no ORM). Deleted (revoked) messages are never
returned.
"""

from __future__ import annotations

from datetime import datetime

from psycopg2.extensions import cursor as PgCursor

# to_tsvector config; must match the messages_body_fts index
FTS_CONFIG = "simple"

_MESSAGE_COLUMNS = """
    m.id, m.message_id, m.chat_pk, m.sender_id, m.sender_name, m.from_me,
    m.kind, m.body, m.has_media, m.media_mimetype, m.media_filename,
    m.media_caption, m.media_size, m.media_duration, m.media_width,
    m.media_height, m.location_data, m.poll_data, m.contact_data,
    m.mentions, m.is_forwarded, m.is_starred, m.message_timestamp,
    m.quoted_message_pk, q.message_id AS quoted_message_id,
    q.body AS quoted_body
"""


def list_messages(
    cur: PgCursor,
    chat_pk: int,
    *,
    before: datetime | None = None,
    after: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Page of a chat's messages in chronological order.

    Returns:
        Tuple of (rows, total matching rows).
    """
    conditions = ["m.chat_pk = %s", "m.is_deleted = FALSE"]
    params: list = [chat_pk]
    if before is not None:
        conditions.append("m.message_timestamp < %s")
        params.append(before)
    if after is not None:
        conditions.append("m.message_timestamp > %s")
        params.append(after)
    where = " AND ".join(conditions)

    cur.execute(f"SELECT COUNT(*) AS total FROM messages m WHERE {where}", params)
    total = cur.fetchone()["total"]

    cur.execute(
        f"""
        SELECT {_MESSAGE_COLUMNS}
        FROM messages m
        LEFT JOIN messages q ON q.id = m.quoted_message_pk
        WHERE {where}
        ORDER BY m.message_timestamp ASC, m.id ASC
        LIMIT %s OFFSET %s
        """,
        [*params, limit, offset],
    )
    return [dict(row) for row in cur.fetchall()], total


def search_messages(
    cur: PgCursor,
    query: str,
    *,
    chat_pk: int | None = None,
    kind: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Full-text search over message bodies, best rank first.

    The query is parsed with plainto_tsquery, so every word must match.

    Returns:
        Tuple of (rows, total matching rows).
    """
    conditions = [
        f"to_tsvector('{FTS_CONFIG}', COALESCE(m.body, '')) @@ plainto_tsquery('{FTS_CONFIG}', %s)",
        "m.is_deleted = FALSE",
    ]
    params: list = [query]
    if chat_pk is not None:
        conditions.append("m.chat_pk = %s")
        params.append(chat_pk)
    if kind:
        conditions.append("m.kind = %s")
        params.append(kind)
    if date_from is not None:
        conditions.append("m.message_timestamp >= %s")
        params.append(date_from)
    if date_to is not None:
        conditions.append("m.message_timestamp <= %s")
        params.append(date_to)
    where = " AND ".join(conditions)

    cur.execute(f"SELECT COUNT(*) AS total FROM messages m WHERE {where}", params)
    total = cur.fetchone()["total"]

    cur.execute(
        f"""
        SELECT {_MESSAGE_COLUMNS}, c.chat_id, c.name AS chat_name, c.kind AS chat_kind,
               ts_rank(to_tsvector('{FTS_CONFIG}', COALESCE(m.body, '')),
                       plainto_tsquery('{FTS_CONFIG}', %s)) AS rank
        FROM messages m
        JOIN chats c ON c.id = m.chat_pk
        LEFT JOIN messages q ON q.id = m.quoted_message_pk
        WHERE {where}
        ORDER BY rank DESC, m.message_timestamp DESC
        LIMIT %s OFFSET %s
        """,
        [query, *params, limit, offset],
    )
    return [dict(row) for row in cur.fetchall()], total


def _select_message(cur: PgCursor, message_pk: int) -> dict | None:
    cur.execute(
        f"""
        SELECT {_MESSAGE_COLUMNS}, m.is_deleted
        FROM messages m
        LEFT JOIN messages q ON q.id = m.quoted_message_pk
        WHERE m.id = %s
        """,
        (message_pk,),
    )
    row = cur.fetchone()
    return dict(row) if row is not None else None


def get_message(cur: PgCursor, message_pk: int) -> dict | None:
    """One message with its chat and, when resolved, the quoted message.

    Revoked messages are returned too, flagged by is_deleted.
    """
    message = _select_message(cur, message_pk)
    if message is None:
        return None

    cur.execute(
        "SELECT id, chat_id, kind, name FROM chats WHERE id = %s",
        (message["chat_pk"],),
    )
    chat = cur.fetchone()
    message["chat"] = dict(chat) if chat is not None else None

    message["quoted_message"] = None
    if message["quoted_message_pk"] is not None:
        message["quoted_message"] = _select_message(cur, message["quoted_message_pk"])
    return message
