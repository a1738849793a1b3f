"""Maintain chats.total_message_count with an AFTER INSERT trigger on messages.

Revision ID: 002_chat_message_aggregate
Revises: 001_initial_schema
Create Date: 2026-10-18
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_chat_message_aggregate"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "002_chat_message_aggregate.sql"


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(_SQL_FILE.read_text(encoding="utf-8"))


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_messages_chat_count ON messages")
    op.execute("DROP FUNCTION IF EXISTS bump_chat_message_count()")
