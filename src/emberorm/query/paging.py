"""
Pagination window types.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, List, Tuple, TypeVar

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class PageRequest:
    """
    Window of ``limit`` rows starting at ``offset``, optionally ordered.
    Ordering entries are field names, ``-name`` for descending.
    """

    offset: int = 0
    limit: int = 20
    order_by: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError("Page offset must be >= 0")
        if self.limit < 1:
            raise ValueError("Page limit must be >= 1")

    @classmethod
    def of(cls, page: int, size: int, *order_by: str) -> "PageRequest":
        """
        Zero-based page number and page size, as in ``PageRequest.of(0, 3, "-username")``.
        """
        if page < 0:
            raise ValueError("Page number must be >= 0")
        return cls(offset=page * size, limit=size, order_by=tuple(order_by))

    @property
    def page_number(self) -> int:
        return self.offset // self.limit

    def next(self) -> "PageRequest":
        return PageRequest(self.offset + self.limit, self.limit, self.order_by)


@dataclass(frozen=True)
class Page(Generic[T]):
    content: List[T]
    total: int
    request: PageRequest

    @property
    def offset(self) -> int:
        return self.request.offset

    @property
    def limit(self) -> int:
        return self.request.limit

    @property
    def number(self) -> int:
        return self.request.page_number

    @property
    def has_next(self) -> bool:
        return (self.offset + self.limit) < self.total

    @property
    def has_previous(self) -> bool:
        return self.offset > 0

    @property
    def is_first(self) -> bool:
        return not self.has_previous

    @property
    def is_last(self) -> bool:
        return not self.has_next

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit)

    def map(self, func: Callable[[T], U]) -> "Page[U]":
        return Page([func(item) for item in self.content], self.total, self.request)

    def __iter__(self) -> Iterator[T]:
        return iter(self.content)

    def __len__(self) -> int:
        return len(self.content)

    def __getitem__(self, index: int) -> T:
        return self.content[index]



@dataclass(frozen=True)
class Slice(Generic[T]):
    """
    Page window without a total; ``has_next`` comes from reading one extra row.
    """

    content: List[T]
    request: PageRequest
    has_next: bool

    @property
    def number(self) -> int:
        return self.request.page_number

    @property
    def has_previous(self) -> bool:
        return self.request.offset > 0

    @property
    def is_first(self) -> bool:
        return not self.has_previous

    @property
    def is_last(self) -> bool:
        return not self.has_next

    def next_request(self) -> PageRequest | None:
        return self.request.next() if self.has_next else None

    def map(self, func: Callable[[T], U]) -> "Slice[U]":
        return Slice([func(item) for item in self.content], self.request, self.has_next)

    def __iter__(self) -> Iterator[T]:
        return iter(self.content)

    def __len__(self) -> int:
        return len(self.content)

    def __getitem__(self, index: int) -> T:
        return self.content[index]
