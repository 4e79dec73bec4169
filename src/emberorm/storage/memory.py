"""
Dictionary-backed storage collaborator with snapshot transactions.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from ..utils import get_logger
from .base import IntegrityError, Row, RowNotFound, StorageError, sort_rows

if TYPE_CHECKING:
    from ..core.model import Model
    from ..query.expressions import Q


Tables = Dict[type, "OrderedDict[Any, Row]"]


class InMemoryStorage:
    """
    Keeps one ordered table per entity type. Integer keys are generated from a
    per-type sequence; rows are copied on every read and write so callers never
    share state with the store.
    """

    def __init__(self, *, enforce_foreign_keys: bool = True) -> None:
        self.enforce_foreign_keys = enforce_foreign_keys
        self._tables: Tables = {}
        self._sequences: Dict[type, int] = {}
        self._transaction: List[Tuple[Optional[str], Tables, Dict[type, int]]] = []
        self.logger = get_logger("storage.memory")

    # ------------------------------------------------------------------ #
    # Row operations
    # ------------------------------------------------------------------ #
    def insert(self, model: type["Model"], fields: Row) -> Any:
        table = self._table(model)
        pk_name = model._meta.primary_key.name
        row = dict(fields)
        key = row.get(pk_name)
        if key is None:
            key = self._next_key(model)
        elif key in table:
            raise IntegrityError(f"Duplicate key {model.__name__}#{key!r}")
        row[pk_name] = key
        self._check_references(model, row)
        if isinstance(key, int):
            self._sequences[model] = max(self._sequences.get(model, 0), key)
        table[key] = row
        self.logger.debug("Inserted %s#%r", model.__name__, key)
        return key

    def update(self, model: type["Model"], key: Any, changed: Row) -> None:
        table = self._table(model)
        if key not in table:
            raise RowNotFound(f"{model.__name__}#{key!r} does not exist")
        self._check_references(model, changed)
        table[key].update(changed)

    def delete(self, model: type["Model"], key: Any) -> None:
        table = self._table(model)
        if key not in table:
            raise RowNotFound(f"{model.__name__}#{key!r} does not exist")
        if self.enforce_foreign_keys:
            self._check_not_referenced(model, key)
        del table[key]

    def read_by_id(self, model: type["Model"], key: Any) -> Optional[Row]:
        row = self._table(model).get(key)
        return dict(row) if row is not None else None

    def read_many(
        self,
        model: type["Model"],
        predicate: Optional["Q"],
        offset: int = 0,
        limit: Optional[int] = None,
        order_by: Sequence[str] = (),
        *,
        with_total: bool = True,
    ) -> Tuple[List[Row], Optional[int]]:
        rows = self._matching(model, predicate)
        total = len(rows) if with_total else None
        rows = sort_rows(rows, order_by)
        end = None if limit is None else offset + limit
        return [dict(row) for row in rows[offset:end]], total

    def bulk_update(self, model: type["Model"], predicate: Optional["Q"], changes: Row) -> int:
        if not changes:
            return 0
        self._check_references(model, changes)
        rows = self._matching(model, predicate)
        for row in rows:
            row.update(changes)
        self.logger.debug("Bulk updated %d %s row(s)", len(rows), model.__name__)
        return len(rows)

    def rows(self, model: type["Model"]) -> List[Row]:
        return [dict(row) for row in self._table(model).values()]

    # ------------------------------------------------------------------ #
    # Transactions
    # ------------------------------------------------------------------ #
    def begin(self) -> None:
        if self._transaction:
            raise StorageError("A transaction is already active; use savepoints to nest.")
        self._transaction.append((None, *self._copy_state()))

    def commit(self) -> None:
        if not self._transaction:
            raise StorageError("No active transaction to commit.")
        self._transaction.clear()

    def rollback(self) -> None:
        if not self._transaction:
            raise StorageError("No active transaction to roll back.")
        _, tables, sequences = self._transaction[0]
        self._tables, self._sequences = tables, sequences
        self._transaction.clear()

    def savepoint(self, name: str) -> None:
        if not self._transaction:
            raise StorageError("Savepoints require an active transaction.")
        self._transaction.append((name, *self._copy_state()))

    def release_savepoint(self, name: str) -> None:
        index = self._savepoint_index(name)
        del self._transaction[index:]

    def rollback_to_savepoint(self, name: str) -> None:
        index = self._savepoint_index(name)
        _, tables, sequences = self._transaction[index]
        self._tables, self._sequences = self._clone(tables), dict(sequences)
        del self._transaction[index + 1 :]

    # ------------------------------------------------------------------ #
    def _table(self, model: type["Model"]) -> "OrderedDict[Any, Row]":
        return self._tables.setdefault(model, OrderedDict())

    def _matching(self, model: type["Model"], predicate: Optional["Q"]) -> List[Row]:
        return [
            row for row in self._table(model).values() if predicate is None or predicate.matches(row)
        ]

    def _next_key(self, model: type["Model"]) -> int:
        key = self._sequences.get(model, 0) + 1
        while key in self._table(model):
            key += 1
        return key

    def _check_references(self, model: type["Model"], row: Row) -> None:
        if not self.enforce_foreign_keys:
            return
        for field in model._meta.references():
            name = field.require_name()
            value = row.get(name)
            if value is None:
                continue
            if value not in self._table(field.require_remote_model()):
                raise IntegrityError(
                    f"{model.__name__}.{name} references missing "
                    f"{field.require_remote_model().__name__}#{value!r}"
                )

    def _check_not_referenced(self, model: type["Model"], key: Any) -> None:
        for other, table in self._tables.items():
            for field in other._meta.references():
                if field.remote_model is not model:
                    continue
                name = field.require_name()
                if any(row.get(name) == key for row in table.values()):
                    raise IntegrityError(
                        f"{model.__name__}#{key!r} is still referenced by {other.__name__}.{name}"
                    )

    def _savepoint_index(self, name: str) -> int:
        for index, (savepoint, _, _) in enumerate(self._transaction):
            if savepoint == name:
                return index
        raise StorageError(f"Unknown savepoint '{name}'")

    def _copy_state(self) -> Tuple[Tables, Dict[type, int]]:
        return self._clone(self._tables), dict(self._sequences)

    @staticmethod
    def _clone(tables: Tables) -> Tables:
        return {
            model: OrderedDict((key, dict(row)) for key, row in table.items())
            for model, table in tables.items()
        }
