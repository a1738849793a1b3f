"""Single message endpoint."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Path

from chatvault.infra.repositories import messages_repository

router = APIRouter(prefix="/messages", tags=["messages"])


def _get_message(message_pk: int) -> dict | None:
    from chatvault.infra.db import txn

    with txn(dict_rows=True) as cur:
        return messages_repository.get_message(cur, message_pk)


@router.get("/{message_pk}")
def get_message(message_pk: int = Path(..., ge=1)) -> dict:
    """Message with its chat and the quoted message it resolves, if any."""
    message = _get_message(message_pk)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"data": message}
