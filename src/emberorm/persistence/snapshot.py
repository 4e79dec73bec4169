"""
Snapshot store used for dirty checking.
"""

from __future__ import annotations

import copy
import struct
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Set

from ..core.model import Model
from ..core.relations import ForeignKey


@dataclass(frozen=True)
class Snapshot:
    values: Mapping[str, Any]


def values_equal(left: Any, right: Any) -> bool:
    """
    Value equality with bit-exact floats: ``0.0`` differs from ``-0.0`` and
    a NaN equals itself.
    """
    if isinstance(left, float) and isinstance(right, float):
        return struct.pack("<d", left) == struct.pack("<d", right)
    if isinstance(left, float) or isinstance(right, float):
        return False
    return left == right


def _field_state(instance: Model, field) -> Any:
    if isinstance(field, ForeignKey):
        return field.storage_value(instance)
    return instance._field_values.get(field.require_name())


class SnapshotStore:
    """
    Holds the latest snapshot per managed instance. References are captured
    by key only, so capturing a child never copies its parent.
    """

    def __init__(self) -> None:
        self._snapshots: Dict[Model, Snapshot] = {}

    @staticmethod
    def capture(instance: Model) -> Snapshot:
        values = {}
        for field in instance._meta.get_fields():
            state = _field_state(instance, field)
            values[field.require_name()] = state if isinstance(field, ForeignKey) else copy.deepcopy(state)
        return Snapshot(MappingProxyType(values))

    @staticmethod
    def diff(instance: Model, snapshot: Snapshot) -> Set[str]:
        changed = set()
        for field in instance._meta.get_fields():
            name = field.require_name()
            if not values_equal(_field_state(instance, field), snapshot.values.get(name)):
                changed.add(name)
        return changed

    @classmethod
    def is_dirty(cls, instance: Model, snapshot: Snapshot) -> bool:
        return bool(cls.diff(instance, snapshot))

    def remember(self, instance: Model) -> Snapshot:
        snapshot = self.capture(instance)
        self._snapshots[instance] = snapshot
        return snapshot

    def get(self, instance: Model) -> Optional[Snapshot]:
        return self._snapshots.get(instance)

    def forget(self, instance: Model) -> None:
        self._snapshots.pop(instance, None)

    def clear(self) -> None:
        self._snapshots.clear()

    def __contains__(self, instance: Model) -> bool:
        return instance in self._snapshots
