"""
Unit of Work bookkeeping: which instances are new, managed or removed, and
the order in which they entered the context.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..core.model import Model

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass
class WriteOperation:
    """A write executed against the storage collaborator during flush."""

    kind: str
    model: type
    key: Any
    fields: Dict[str, Any] = field(default_factory=dict)
    instance: Model | None = field(default=None, repr=False, compare=False)


class UnitOfWork:
    """
    Tracks new, managed and removed instances within one context.

    Every instance gets a sequence number when it first enters the context;
    inserts replay in that order and deletes in the reverse order so parents
    are written before, and deleted after, their children.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._sequence: Dict[Model, int] = {}
        self.new: Dict[Model, None] = {}
        self.managed: Dict[Model, Any] = {}
        self.removed: Dict[Model, Any] = {}

    # Registration methods ----------------------------------------------
    def register_new(self, instance: Model) -> None:
        self._sequence.setdefault(instance, next(self._counter))
        self.new[instance] = None

    def register_managed(self, instance: Model, key: Any) -> None:
        self._sequence.setdefault(instance, next(self._counter))
        self.new.pop(instance, None)
        self.managed[instance] = key

    def register_removed(self, instance: Model) -> Any:
        key = self.managed.pop(instance)
        self.removed[instance] = key
        return key

    def cancel_removal(self, instance: Model) -> Any:
        key = self.removed.pop(instance)
        self.managed[instance] = key
        return key

    def forget(self, instance: Model) -> None:
        self.new.pop(instance, None)
        self.managed.pop(instance, None)
        self.removed.pop(instance, None)
        self._sequence.pop(instance, None)

    # Queries -------------------------------------------------------------
    def is_new(self, instance: Model) -> bool:
        return instance in self.new

    def is_managed(self, instance: Model) -> bool:
        return instance in self.managed

    def is_removed(self, instance: Model) -> bool:
        return instance in self.removed

    def is_key_removed(self, model: type, key: Any) -> bool:
        return any(type(instance) is model and k == key for instance, k in self.removed.items())

    def key_of(self, instance: Model) -> Any:
        return self.managed.get(instance, self.removed.get(instance))

    def tracked(self) -> List[Model]:
        return [*self.new, *self.managed, *self.removed]

    def pending_inserts(self) -> List[Model]:
        return sorted(self.new, key=self._sequence.__getitem__)

    def managed_in_order(self) -> List[Model]:
        return sorted(self.managed, key=self._sequence.__getitem__)

    def pending_deletes(self) -> List[Tuple[Model, Any]]:
        ordered = sorted(self.removed, key=self._sequence.__getitem__, reverse=True)
        return [(instance, self.removed[instance]) for instance in ordered]

    def has_structural_changes(self) -> bool:
        return bool(self.new or self.removed)

    def clear(self) -> None:
        self._sequence.clear()
        self.new.clear()
        self.managed.clear()
        self.removed.clear()
