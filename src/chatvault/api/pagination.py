"""Page/limit query parameters and the response envelope."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class Page:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


# ── Schemas ───────────────────────────────────────────────────────────────────


class Pagination(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page: int
    limit: int
    total: int
    total_pages: int = Field(alias="totalPages")


class ListResponse(BaseModel):
    data: list[dict[str, Any]]
    pagination: Pagination


def envelope(data: list[dict[str, Any]], total: int, page: Page) -> dict[str, Any]:
    pagination = Pagination(
        page=page.page,
        limit=page.limit,
        total=total,
        total_pages=math.ceil(total / page.limit) if total else 0,
    )
    return ListResponse(data=data, pagination=pagination).model_dump(by_alias=True)
