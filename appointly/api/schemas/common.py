"""
Shared schema pieces: camelCase base model and pagination envelope.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict

from appointly.core.pagination import PaginatedResult

T = TypeVar("T")


def _to_camel(snake: str) -> str:
    parts = snake.split("_")
    return parts[0] + "".join(w.capitalize() for w in parts[1:])


class CamelModel(BaseModel):
    """Base model that serialises field names to camelCase."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=_to_camel,
    )


class PaginationMeta(CamelModel):
    page: int
    page_size: int
    total_items: int
    total_pages: int

    @classmethod
    def from_result(cls, result: PaginatedResult[Any]) -> "PaginationMeta":
        return cls(
            page=result.page,
            page_size=result.page_size,
            total_items=result.total_items,
            total_pages=result.total_pages,
        )


class PaginatedResponse(CamelModel, Generic[T]):
    """Envelope for paginated list responses."""

    data: list[T]
    meta: PaginationMeta
