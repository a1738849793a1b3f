"""Contacts repository - directory listing.

Uses raw SQL with psycopg2 (no ORM).
"""

from psycopg2.extensions import cursor as PgCursor

from .patterns import contains_pattern

_CONTACT_COLUMNS = """
    id, contact_id, name, nickname, about, avatar_url, last_seen_at,
    created_at, updated_at
"""


def list_contacts(
    cur: PgCursor,
    *,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Page of contacts by name; search matches name or contact id."""
    where = "TRUE"
    params: list = []
    if search:
        where = "(name ILIKE %s OR contact_id LIKE %s)"
        pattern = contains_pattern(search)
        params = [pattern, pattern]

    cur.execute(f"SELECT COUNT(*) AS total FROM contacts WHERE {where}", params)
    total = cur.fetchone()["total"]

    cur.execute(
        f"""
        SELECT {_CONTACT_COLUMNS}
        FROM contacts
        WHERE {where}
        ORDER BY name ASC NULLS LAST, id
        LIMIT %s OFFSET %s
        """,
        [*params, limit, offset],
    )
    return [dict(row) for row in cur.fetchall()], total


def get_contact(cur: PgCursor, contact_pk: int) -> dict | None:
    cur.execute(f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE id = %s", (contact_pk,))
    row = cur.fetchone()
    return dict(row) if row is not None else None
