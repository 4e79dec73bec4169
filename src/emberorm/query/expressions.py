"""
Predicate primitives: comparison nodes combined with AND / OR / NOT.

Predicates are plain data. Storage collaborators either evaluate them in
memory with :meth:`Q.matches` or translate them into their own query form.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping


AND = "AND"
OR = "OR"


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        return op(left, right)

    return compare


def _contains(left: Any, right: Any) -> bool:
    return isinstance(left, str) and str(right) in left


def _icontains(left: Any, right: Any) -> bool:
    return isinstance(left, str) and str(right).lower() in left.lower()


LOOKUPS: Dict[str, Callable[[Any, Any], bool]] = {
    "exact": operator.eq,
    "ne": operator.ne,
    "gt": _ordered(operator.gt),
    "gte": _ordered(operator.ge),
    "lt": _ordered(operator.lt),
    "lte": _ordered(operator.le),
    "in": lambda left, right: left in right,
    "contains": _contains,
    "icontains": _icontains,
    "isnull": lambda left, right: (left is None) is bool(right),
}


def _as_key(value: Any) -> Any:
    # entities compare by primary key, as stored
    if hasattr(value, "_meta"):
        return value.pk
    return value


@dataclass(frozen=True)
class Comparison:
    field: str
    lookup: str
    value: Any

    def __post_init__(self) -> None:
        if self.lookup not in LOOKUPS:
            raise ValueError(f"Unsupported lookup '{self.lookup}'")

    def matches(self, row: Mapping[str, Any]) -> bool:
        return LOOKUPS[self.lookup](row.get(self.field), self.value)


class Attr:
    """
    Named field reference producing predicates::

        (Attr("age") > 15) & Attr("username").contains("m")
    """

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def _q(self, lookup: str, value: Any) -> "Q":
        return Q(Comparison(self.name, lookup, value))

    def __eq__(self, value: Any) -> "Q":  # type: ignore[override]
        return self._q("exact", _as_key(value))

    def __ne__(self, value: Any) -> "Q":  # type: ignore[override]
        return self._q("ne", _as_key(value))

    def __gt__(self, value: Any) -> "Q":
        return self._q("gt", value)

    def __ge__(self, value: Any) -> "Q":
        return self._q("gte", value)

    def __lt__(self, value: Any) -> "Q":
        return self._q("lt", value)

    def __le__(self, value: Any) -> "Q":
        return self._q("lte", value)

    __hash__ = None  # type: ignore[assignment]

    def in_(self, values) -> "Q":
        return self._q("in", tuple(_as_key(value) for value in values))

    def contains(self, text: str) -> "Q":
        return self._q("contains", text)

    def icontains(self, text: str) -> "Q":
        return self._q("icontains", text)

    def is_null(self, flag: bool = True) -> "Q":
        return self._q("isnull", flag)

    def __repr__(self) -> str:
        return f"Attr({self.name!r})"


class Q:
    """
    Boolean expression container. Keyword arguments are equality checks::

        Q(username="m1", team=team_a) | ~Q(age=0)
    """

    def __init__(self, *children: Any, **lookups: Any) -> None:
        self.children: List[Any] = list(children)
        for name, value in lookups.items():
            self.children.append(Comparison(name, "exact", _as_key(value)))
        self.connector = AND
        self.negated = False

    def __or__(self, other: "Q") -> "Q":
        return self._combine(other, OR)

    def __and__(self, other: "Q") -> "Q":
        return self._combine(other, AND)

    def __invert__(self) -> "Q":
        q = self._clone()
        q.negated = not q.negated
        return q

    def __repr__(self) -> str:
        prefix = "NOT " if self.negated else ""
        inner = f" {self.connector} ".join(repr(child) for child in self.children)
        return f"<Q {prefix}({inner})>"

    def matches(self, row: Mapping[str, Any]) -> bool:
        if not self.children:
            return not self.negated
        results = (child.matches(row) for child in self.children)
        outcome = all(results) if self.connector == AND else any(results)
        return not outcome if self.negated else outcome

    def is_empty(self) -> bool:
        return not self.children

    # Internal helpers -------------------------------------------------
    def _clone(self) -> "Q":
        clone = Q()
        clone.children = list(self.children)
        clone.connector = self.connector
        clone.negated = self.negated
        return clone

    def _combine(self, other: "Q", connector: str) -> "Q":
        if not isinstance(other, Q):
            return NotImplemented
        if other.is_empty():
            return self._clone()
        if self.is_empty():
            return other._clone()
        q = Q()
        q.children = [self._clone(), other._clone()]
        q.connector = connector
        return q
