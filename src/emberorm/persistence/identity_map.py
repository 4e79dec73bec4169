"""
Identity map ensuring a single in-memory instance per stored row.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from ..core.model import Model
from ..errors import DuplicateIdentity


class IdentityMap:
    """
    Stores entity instances keyed by (model, primary key).

    Not thread-safe: a map belongs to exactly one persistence context.
    """

    def __init__(self) -> None:
        self._store: Dict[Tuple[type, Any], Model] = {}

    def register(self, model: type, key: Any, instance: Model) -> None:
        identity = (model, key)
        existing = self._store.get(identity)
        if existing is None:
            self._store[identity] = instance
        elif existing is not instance:
            raise DuplicateIdentity(model, key)

    def lookup(self, model: type, key: Any) -> Optional[Model]:
        return self._store.get((model, key))

    def evict(self, model: type, key: Any) -> Optional[Model]:
        return self._store.pop((model, key), None)

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, instance: Model) -> bool:
        pk = instance.pk
        if pk is None:
            return False
        return self._store.get((type(instance), pk)) is instance

    def __len__(self) -> int:
        return len(self._store)
