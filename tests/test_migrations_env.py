"""Tests for the Alembic database URL resolution."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from migrations.env_helpers import database_url, libpq_dsn_to_url, parse_libpq_dsn


class TestParseLibpqDsn:
    def test_plain_keywords(self):
        assert parse_libpq_dsn("dbname=chatvault user=ingest host=db") == {
            "dbname": "chatvault",
            "user": "ingest",
            "host": "db",
        }

    def test_spaces_around_equals(self):
        assert parse_libpq_dsn("dbname = chatvault port= 6432")["port"] == "6432"

    def test_quoted_value_unescaped(self):
        assert parse_libpq_dsn(r"password='a b\'c'")["password"] == "a b'c"


class TestLibpqDsnToUrl:
    def test_unix_socket_host(self):
        dsn = "dbname=chatvault user=ingest password=s3cret host=/var/run/postgresql"
        assert libpq_dsn_to_url(dsn) == (
            "postgresql+psycopg2://ingest:s3cret@/chatvault?host=%2Fvar%2Frun%2Fpostgresql"
        )

    def test_tcp_host_default_port(self):
        dsn = "dbname=chatvault user=ingest password=pw host=db.internal"
        assert libpq_dsn_to_url(dsn) == "postgresql+psycopg2://ingest:pw@db.internal:5432/chatvault"

    def test_custom_port(self):
        dsn = "dbname=db user=u password=p host=10.0.0.5 port=6432"
        assert libpq_dsn_to_url(dsn) == "postgresql+psycopg2://u:p@10.0.0.5:6432/db"

    def test_special_chars_encoded(self):
        dsn = "dbname=db user=u@corp password=p@ss=word host=h"
        result = libpq_dsn_to_url(dsn)
        assert "u%40corp" in result
        assert "p%40ss%3Dword" in result

    def test_db_password_fills_missing_password(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert "u:from-env@" in libpq_dsn_to_url("dbname=db user=u host=h")

    def test_dsn_password_wins(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        result = libpq_dsn_to_url("dbname=db user=u password=from-dsn host=h")
        assert "from-dsn" in result
        assert "from-env" not in result


class TestDatabaseUrl:
    def test_driver_url_passthrough(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql+psycopg2://u:p@h/db"}, clear=True):
            assert database_url() == "postgresql+psycopg2://u:p@h/db"

    def test_dsn_converted(self):
        with patch.dict(os.environ, {"DATABASE_URL": "dbname=db user=u password=p host=h"}, clear=True):
            assert database_url() == "postgresql+psycopg2://u:p@h:5432/db"

    def test_missing_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
                database_url()

    @pytest.mark.parametrize("scheme", ["postgres", "postgresql"])
    def test_scheme_gets_driver(self, scheme):
        with patch.dict(os.environ, {"DATABASE_URL": f"{scheme}://u:p@h/db"}, clear=True):
            assert database_url() == "postgresql+psycopg2://u:p@h/db"

    def test_url_db_password_fallback(self):
        env = {"DATABASE_URL": "postgresql://u@h:5433/db", "DB_PASSWORD": "secret"}
        with patch.dict(os.environ, env, clear=True):
            assert database_url() == "postgresql+psycopg2://u:secret@h:5433/db"

    def test_url_password_not_replaced(self):
        env = {"DATABASE_URL": "postgresql://u:mine@h/db", "DB_PASSWORD": "secret"}
        with patch.dict(os.environ, env, clear=True):
            assert "secret" not in database_url()
