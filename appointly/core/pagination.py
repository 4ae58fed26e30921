"""
Pagination helpers shared by list endpoints.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Generic, Sequence, TypeVar

from appointly.core.exceptions import ValidationError

T = TypeVar("T")


@dataclass(frozen=True)
class PaginatedResult(Generic[T]):
    """Generic container for a page of results plus metadata."""

    items: Sequence[T]
    total_items: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total_items == 0:
            return 0
        return math.ceil(self.total_items / self.page_size)


def check_page(page: int, page_size: int, max_page_size: int | None = None) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1.")
    if page_size < 1:
        raise ValidationError("limit must be >= 1.")
    if max_page_size is not None and page_size > max_page_size:
        raise ValidationError(f"limit must be <= {max_page_size}.")
