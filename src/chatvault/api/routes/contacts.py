"""Contact directory endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Path, Query

from chatvault.api.pagination import Page, envelope
from chatvault.infra.repositories import contacts_repository

router = APIRouter(prefix="/contacts", tags=["contacts"])


def _list_contacts(*, search: str | None, page: Page) -> tuple[list[dict], int]:
    from chatvault.infra.db import txn

    with txn(dict_rows=True) as cur:
        return contacts_repository.list_contacts(
            cur, search=search, limit=page.limit, offset=page.offset
        )


def _get_contact(contact_pk: int) -> dict | None:
    from chatvault.infra.db import txn

    with txn(dict_rows=True) as cur:
        return contacts_repository.get_contact(cur, contact_pk)


@router.get("")
def list_contacts(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    search: str | None = Query(None, min_length=1),
) -> dict:
    paging = Page(page=page, limit=limit)
    rows, total = _list_contacts(search=search, page=paging)
    return envelope(rows, total, paging)


@router.get("/{contact_pk}")
def get_contact(contact_pk: int = Path(..., ge=1)) -> dict:
    contact = _get_contact(contact_pk)
    if contact is None:
        raise HTTPException(status_code=404, detail="Contact not found")
    return {"data": contact}
