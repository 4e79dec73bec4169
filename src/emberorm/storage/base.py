"""
Storage collaborator interfaces consumed by the persistence context.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

if TYPE_CHECKING:
    from ..core.model import Model
    from ..query.expressions import Q


Row = Dict[str, Any]


class StorageError(RuntimeError):
    """Base error for storage-level failures."""


class StorageConfigurationError(StorageError):
    """Raised when a storage backend is configured incorrectly."""


class IntegrityError(StorageError):
    """Raised when a write violates key or reference integrity."""


class RowNotFound(StorageError):
    """Raised when an update or delete targets a missing row."""


class StorageBackend(Protocol):
    """
    Synchronous, individually atomic row operations keyed by entity type.
    Rows are dictionaries keyed by field name; references carry the target key.
    """

    def insert(self, model: type["Model"], fields: Row) -> Any:
        """
        Insert a row and return its key (the supplied one, or a generated one).
        """

    def update(self, model: type["Model"], key: Any, changed: Row) -> None:
        """
        Overwrite ``changed`` fields of an existing row.
        """

    def delete(self, model: type["Model"], key: Any) -> None:
        """
        Remove the row with ``key``.
        """

    def read_by_id(self, model: type["Model"], key: Any) -> Optional[Row]:
        """
        Return a copy of the row, or ``None`` when absent.
        """

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
        """
        Return the matching rows inside ``[offset, offset + limit)`` and the total
        number of matches. ``limit=None`` is unbounded; ``limit=0`` only counts.
        Without ``order_by`` rows come back in key order for generated keys.
        With ``with_total=False`` no count is taken and the total is ``None``.
        """

    def bulk_update(self, model: type["Model"], predicate: Optional["Q"], changes: Row) -> int:
        """
        Overwrite ``changes`` on every matching row and return how many rows changed.
        """


@runtime_checkable
class TransactionalStorage(Protocol):
    """
    Optional transaction boundary offered by a storage collaborator.
    """

    def begin(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def savepoint(self, name: str) -> None: ...

    def release_savepoint(self, name: str) -> None: ...

    def rollback_to_savepoint(self, name: str) -> None: ...


def sort_rows(rows: List[Row], order_by: Sequence[str]) -> List[Row]:
    """
    Stable multi-key sort; ``-name`` sorts descending and ``None`` sorts first.
    """
    ordered = list(rows)
    for entry in reversed(list(order_by)):
        descending = entry.startswith("-")
        name = entry[1:] if descending else entry
        ordered.sort(
            key=lambda row: (row.get(name) is not None, row.get(name)),
            reverse=descending,
        )
    return ordered
