"""Database URL resolution for Alembic.

Kept apart from env.py so it can be tested without an alembic context.
DATABASE_URL may be a URL or a libpq key=value DSN (the form psycopg2
accepts); Alembic's SQLAlchemy engine needs a URL.
"""

from __future__ import annotations

import os
import re
from urllib.parse import quote_plus, urlparse, urlunparse

# key=value or key='quoted value' with backslash escapes
_DSN_TOKEN = re.compile(r"(\w+)\s*=\s*('(?:[^'\\]|\\.)*'|\S+)")

_SCHEME_ALIASES = {
    "postgres://": "postgresql+psycopg2://",
    "postgresql://": "postgresql+psycopg2://",
}


def parse_libpq_dsn(dsn: str) -> dict[str, str]:
    """Split a libpq DSN into its keywords."""
    tokens: dict[str, str] = {}
    for key, value in _DSN_TOKEN.findall(dsn):
        if value.startswith("'") and value.endswith("'") and len(value) >= 2:
            value = re.sub(r"\\(.)", r"\1", value[1:-1])
        tokens[key] = value
    return tokens


def libpq_dsn_to_url(dsn: str) -> str:
    """Convert a libpq DSN to a postgresql+psycopg2 URL.

    A host starting with "/" is a unix socket directory and goes to the
    query string. DB_PASSWORD fills in a missing password.
    """
    tokens = parse_libpq_dsn(dsn)
    password = tokens.get("password") or os.environ.get("DB_PASSWORD", "")

    credentials = quote_plus(tokens.get("user", ""))
    if password:
        credentials += ":" + quote_plus(password)
    dbname = quote_plus(tokens.get("dbname", ""))
    host = tokens.get("host", "localhost")

    if host.startswith("/"):
        return f"postgresql+psycopg2://{credentials}@/{dbname}?host={quote_plus(host)}"
    port = tokens.get("port", "5432")
    return f"postgresql+psycopg2://{credentials}@{host}:{port}/{dbname}"


def _with_password(url: str, password: str) -> str:
    parsed = urlparse(url)
    if parsed.password:
        return url
    netloc = f"{quote_plus(parsed.username or '')}:{quote_plus(password)}@{parsed.hostname or ''}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


def database_url() -> str:
    """SQLAlchemy URL for DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in url:
        return libpq_dsn_to_url(url)

    for alias, scheme in _SCHEME_ALIASES.items():
        if url.startswith(alias):
            url = scheme + url[len(alias):]
            break
    db_password = os.environ.get("DB_PASSWORD", "")
    return _with_password(url, db_password) if db_password else url
