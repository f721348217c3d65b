# src/async_criteria/base/pagination.py
import math
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, TypeVar

T = TypeVar("T")
U = TypeVar("U")


class PaginationResult(Generic[T]):
    """
    One page of results plus the arithmetic derived from the total count.

    ``page`` and ``per_page`` are clamped to at least 1. ``from_item`` and
    ``to_item`` are 1-based positions of the first and last item on the
    page, both 0 for an empty result.
    """

    def __init__(self, items: List[T], total: int, page: int, per_page: int):
        self.items = list(items)
        self.total = total
        self.page = max(1, page)
        self.per_page = max(1, per_page)

        self.last_page = max(1, math.ceil(self.total / self.per_page))
        self.has_more = self.page < self.last_page
        self.has_previous = self.page > 1
        self.next_page: Optional[int] = self.page + 1 if self.has_more else None
        self.previous_page: Optional[int] = self.page - 1 if self.has_previous else None

        if self.total > 0:
            self.from_item = (self.page - 1) * self.per_page + 1
            self.to_item = min(self.from_item + len(self.items) - 1, self.total)
        else:
            self.from_item = 0
            self.to_item = 0

    @property
    def on_first_page(self) -> bool:
        return self.page == 1

    @property
    def on_last_page(self) -> bool:
        return self.page >= self.last_page

    def is_empty(self) -> bool:
        return not self.items

    def meta(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "last_page": self.last_page,
            "from": self.from_item,
            "to": self.to_item,
            "has_more": self.has_more,
            "has_previous": self.has_previous,
            "next_page": self.next_page,
            "previous_page": self.previous_page,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"items": self.items, **self.meta()}

    def map(self, fn: Callable[[T], U]) -> "PaginationResult[U]":
        """Returns a new page with ``fn`` applied to every item."""
        return PaginationResult([fn(item) for item in self.items], self.total, self.page, self.per_page)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> T:
        return self.items[index]

    def __repr__(self) -> str:
        return (
            f"PaginationResult(page={self.page}, per_page={self.per_page}, "
            f"total={self.total}, items={len(self.items)})"
        )
