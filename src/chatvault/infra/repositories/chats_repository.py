"""Chats repository - read-side queries for the chat list and chat detail.

Uses raw SQL with psycopg2 (no ORM). Cursors must yield dict rows
(txn(dict_rows=True)).
"""

from __future__ import annotations

from psycopg2.extensions import cursor as PgCursor

from .patterns import contains_pattern

_CHAT_COLUMNS = """
    id, chat_id, kind, name, description, is_archived, is_pinned, is_muted,
    is_read_only, unread_count, last_message_at, last_message_preview,
    total_message_count, created_at, updated_at
"""


def list_chats(
    cur: PgCursor,
    *,
    archived: bool = False,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Page of chats, pinned first then most recently active.

    Returns:
        Tuple of (rows, total matching rows).
    """
    conditions = ["is_archived = %s"]
    params: list = [archived]
    if search:
        conditions.append("name ILIKE %s")
        params.append(contains_pattern(search))
    where = " AND ".join(conditions)

    cur.execute(f"SELECT COUNT(*) AS total FROM chats WHERE {where}", params)
    total = cur.fetchone()["total"]

    cur.execute(
        f"""
        SELECT {_CHAT_COLUMNS}
        FROM chats
        WHERE {where}
        ORDER BY is_pinned DESC, last_message_at DESC NULLS LAST, id
        LIMIT %s OFFSET %s
        """,
        [*params, limit, offset],
    )
    return [dict(row) for row in cur.fetchall()], total


def get_chat(cur: PgCursor, chat_pk: int) -> dict | None:
    cur.execute(f"SELECT {_CHAT_COLUMNS} FROM chats WHERE id = %s", (chat_pk,))
    row = cur.fetchone()
    return dict(row) if row is not None else None


def get_group_metadata(cur: PgCursor, chat_pk: int) -> dict | None:
    """Group metadata of a chat with its roster (active members first)."""
    cur.execute(
        """
        SELECT id, subject, subject_owner, owner, description, community_id,
               is_community, is_community_announce, announce, restrict_mode,
               join_approval_mode, member_add_mode, ephemeral_duration,
               invite_code, creation_time
        FROM group_metadata
        WHERE chat_pk = %s
        """,
        (chat_pk,),
    )
    group = cur.fetchone()
    if group is None:
        return None

    cur.execute(
        """
        SELECT participant_id, role, is_active, added_at, removed_at
        FROM group_participants
        WHERE group_metadata_id = %s
        ORDER BY is_active DESC, participant_id
        """,
        (group["id"],),
    )
    result = dict(group)
    result["participants"] = [dict(row) for row in cur.fetchall()]
    return result
