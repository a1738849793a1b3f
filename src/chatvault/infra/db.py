"""Database access layer using psycopg2.

Provides:
- get_conn(): Get a database connection from DATABASE_URL
- create_pool(): Threaded connection pool for the entity store
- txn(): Context manager for short, safe transactions
- pooled_txn(): Same, borrowing the connection from a pool
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool


def _dsn_has_password(dsn: str) -> bool:
    if "://" in dsn:
        netloc = dsn.split("://", 1)[1].split("/", 1)[0]
        userinfo = netloc.rpartition("@")[0]
        return ":" in userinfo
    return any(part.startswith("password=") for part in dsn.split())


def _connect_kwargs() -> tuple[str, dict[str, Any]]:
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    kwargs: dict[str, Any] = {}
    db_password = os.environ.get("DB_PASSWORD", "")
    if db_password and not _dsn_has_password(dsn):
        kwargs["password"] = db_password
    return dsn, kwargs


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    DB_PASSWORD is passed separately when the DSN carries no password.

    Returns:
        psycopg2 connection object.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn, kwargs = _connect_kwargs()
    return psycopg2.connect(dsn, **kwargs)


def create_pool(minconn: int = 1, maxconn: int = 10) -> ThreadedConnectionPool:
    """Create a thread-safe connection pool from DATABASE_URL.

    Transport events of different types may be dispatched concurrently,
    each handler borrows its own connection.
    """
    dsn, kwargs = _connect_kwargs()
    return ThreadedConnectionPool(minconn, maxconn, dsn, **kwargs)


@contextmanager
def txn(conn: PgConnection | None = None, *, dict_rows: bool = False) -> Iterator[PgCursor]:
    """Context manager for a short, safe transaction.

    If conn is None, creates a new connection that is closed on exit.
    Commits on successful exit, rolls back on exception.

    Args:
        conn: Optional existing connection. If None, creates new one.
        dict_rows: Yield a RealDictCursor (rows as dicts) instead of tuples.

    Yields:
        Cursor for executing queries within the transaction.

    Example:
        with txn() as cur:
            cur.execute("SELECT id FROM chats WHERE chat_id = %s", (jid,))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        cursor_factory = RealDictCursor if dict_rows else None
        with conn.cursor(cursor_factory=cursor_factory) as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


@contextmanager
def pooled_txn(pool: ThreadedConnectionPool) -> Iterator[PgCursor]:
    """Transaction on a pooled connection, rows as dicts.

    The connection goes back to the pool after commit or rollback.
    """
    conn = pool.getconn()
    try:
        with txn(conn, dict_rows=True) as cur:
            yield cur
    finally:
        pool.putconn(conn)
