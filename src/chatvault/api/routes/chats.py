"""Chat list, chat detail and chat history endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Path, Query

from chatvault.api.pagination import Page, envelope
from chatvault.infra.repositories import chats_repository, messages_repository

router = APIRouter(prefix="/chats", tags=["chats"])


def _list_chats(*, archived: bool, search: str | None, page: Page) -> tuple[list[dict], int]:
    from chatvault.infra.db import txn

    with txn(dict_rows=True) as cur:
        return chats_repository.list_chats(
            cur, archived=archived, search=search, limit=page.limit, offset=page.offset
        )


def _get_chat(chat_pk: int) -> dict | None:
    """Chat with its group metadata (None for non-group chats)."""
    from chatvault.infra.db import txn

    with txn(dict_rows=True) as cur:
        chat = chats_repository.get_chat(cur, chat_pk)
        if chat is None:
            return None
        chat["group_metadata"] = chats_repository.get_group_metadata(cur, chat_pk)
        return chat


def _list_messages(
    chat_pk: int, *, before: datetime | None, after: datetime | None, page: Page
) -> tuple[list[dict], int]:
    from chatvault.infra.db import txn

    with txn(dict_rows=True) as cur:
        return messages_repository.list_messages(
            cur, chat_pk, before=before, after=after, limit=page.limit, offset=page.offset
        )


@router.get("")
def list_chats(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    archived: bool = Query(False),
    search: str | None = Query(None, min_length=1),
) -> dict:
    """Pinned chats first, then by most recent activity."""
    paging = Page(page=page, limit=limit)
    rows, total = _list_chats(archived=archived, search=search, page=paging)
    return envelope(rows, total, paging)


@router.get("/{chat_pk}")
def get_chat(chat_pk: int = Path(..., ge=1)) -> dict:
    chat = _get_chat(chat_pk)
    if chat is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"data": chat}


@router.get("/{chat_pk}/messages")
def list_chat_messages(
    chat_pk: int = Path(..., ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=200),
    before: datetime | None = Query(None),
    after: datetime | None = Query(None),
) -> dict:
    """Chronological messages of a chat; revoked messages are excluded."""
    paging = Page(page=page, limit=limit)
    rows, total = _list_messages(chat_pk, before=before, after=after, page=paging)
    return envelope(rows, total, paging)
