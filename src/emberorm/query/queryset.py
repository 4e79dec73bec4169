"""
QuerySet providing a chainable query API over a persistence context.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Tuple

from .expressions import Q
from .paging import Page, PageRequest, Slice

if TYPE_CHECKING:
    from ..core.model import Model
    from ..persistence.context import PersistenceContext


class QuerySet:
    """
    Immutable query description; every refinement returns a new QuerySet.
    Execution goes through :meth:`PersistenceContext.find_all` so results are
    routed through the identity map.
    """

    def __init__(
        self,
        model: type["Model"],
        context: "PersistenceContext",
        *,
        where: Optional[Q] = None,
        ordering: Tuple[str, ...] = (),
        related: Tuple[str, ...] = (),
        read_only: bool = False,
    ) -> None:
        self.model = model
        self.context = context
        self._where = where or Q()
        self._ordering = ordering
        self._related = related
        self._read_only = read_only

    # Public API --------------------------------------------------------
    def filter(self, **lookups: Any) -> "QuerySet":
        return self._clone(where=self._add_q(Q(**lookups)))

    def exclude(self, **lookups: Any) -> "QuerySet":
        return self._clone(where=self._add_q(~Q(**lookups)))

    def where(self, q_object: Q) -> "QuerySet":
        return self._clone(where=self._add_q(q_object))

    def order_by(self, *fields: str) -> "QuerySet":
        for entry in fields:
            self.model._meta.get_field(entry.lstrip("-"))
        return self._clone(ordering=tuple(fields))

    def select_related(self, *fields: str) -> "QuerySet":
        """
        Load the named references together with the results.
        """
        related = list(self._related)
        for name in fields:
            self.context._fetchable(self.model, name)
            if name not in related:
                related.append(name)
        return self._clone(related=tuple(related))

    def read_only(self) -> "QuerySet":
        return self._clone(read_only=True)

    def all(self) -> List["Model"]:
        return self.context.find_all(
            self.model,
            self._predicate(),
            order_by=self._ordering,
            read_only=self._read_only,
            fetch=self._related,
        )

    def page(self, offset: int = 0, limit: int = 20) -> Page["Model"]:
        return self.context.find_all(
            self.model,
            self._predicate(),
            page=self._request(offset, limit),
            read_only=self._read_only,
            fetch=self._related,
        )

    def slice(self, offset: int = 0, limit: int = 20) -> Slice["Model"]:
        return self.context.find_slice(
            self.model,
            self._predicate(),
            self._request(offset, limit),
            read_only=self._read_only,
            fetch=self._related,
        )

    def first(self) -> Optional["Model"]:
        window = self.slice(0, 1)
        return window.content[0] if window.content else None

    def count(self) -> int:
        return self.context.count(self.model, self._predicate())

    def exists(self) -> bool:
        return self.count() > 0

    def __iter__(self) -> Iterator["Model"]:
        return iter(self.all())

    def __repr__(self) -> str:
        return f"<QuerySet {self.model.__name__} where={self._where!r} order_by={self._ordering!r}>"

    # Internal helpers --------------------------------------------------
    def _predicate(self) -> Optional[Q]:
        if self._where.is_empty():
            return None
        return self._where

    def _request(self, offset: int, limit: int) -> PageRequest:
        return PageRequest(offset=offset, limit=limit, order_by=self._ordering)

    def _add_q(self, q_object: Q) -> Q:
        if self._where.is_empty():
            return q_object
        return self._where & q_object

    def _clone(self, **overrides: Any) -> "QuerySet":
        return QuerySet(
            self.model,
            self.context,
            where=overrides.get("where", self._where),
            ordering=overrides.get("ordering", self._ordering),
            related=overrides.get("related", self._related),
            read_only=overrides.get("read_only", self._read_only),
        )
