"""Full-text message search."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query

from chatvault.api.pagination import Page, envelope
from chatvault.infra.repositories import messages_repository
from chatvault.whatsapp.models import MessageKind

router = APIRouter(prefix="/search", tags=["search"])


def _search(
    query: str,
    *,
    chat_pk: int | None,
    kind: str | None,
    date_from: datetime | None,
    date_to: datetime | None,
    page: Page,
) -> tuple[list[dict], int]:
    from chatvault.infra.db import txn

    with txn(dict_rows=True) as cur:
        return messages_repository.search_messages(
            cur,
            query,
            chat_pk=chat_pk,
            kind=kind,
            date_from=date_from,
            date_to=date_to,
            limit=page.limit,
            offset=page.offset,
        )


@router.get("")
def search_messages(
    q: str = Query(""),
    chat_id: int | None = Query(None, alias="chatId", ge=1),
    kind: MessageKind | None = Query(None, alias="messageType"),
    date_from: datetime | None = Query(None, alias="dateFrom"),
    date_to: datetime | None = Query(None, alias="dateTo"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
) -> dict:
    """Search message bodies; every word of q must match."""
    if not q.strip():
        raise HTTPException(status_code=400, detail='Search query parameter "q" is required')

    paging = Page(page=page, limit=limit)
    rows, total = _search(
        q.strip(),
        chat_pk=chat_id,
        kind=kind.value if kind else None,
        date_from=date_from,
        date_to=date_to,
        page=paging,
    )
    return envelope(rows, total, paging)
