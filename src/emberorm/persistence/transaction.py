"""
Transaction manager delegating begin/commit/rollback and savepoints to the
storage collaborator.
"""

from __future__ import annotations

import itertools
from typing import Any, List

from ..errors import TransactionError
from ..storage.base import TransactionalStorage


class TransactionManager:
    """
    Keeps a stack of open transaction levels. The outermost level is a storage
    transaction, deeper levels are savepoints.
    """

    def __init__(self, storage: Any) -> None:
        self.storage = storage
        self._stack: List[str | None] = []
        self._savepoint_counter = itertools.count(1)

    @property
    def supported(self) -> bool:
        return isinstance(self.storage, TransactionalStorage)

    @property
    def depth(self) -> int:
        return len(self._stack)

    def begin(self) -> None:
        if not self.supported:
            raise TransactionError(
                f"{type(self.storage).__name__} does not provide transaction boundaries."
            )
        if self.depth == 0:
            self.storage.begin()
            self._stack.append(None)
            return

        name = self._next_savepoint_name()
        self.storage.savepoint(name)
        self._stack.append(name)

    def commit(self) -> None:
        if self.depth == 0:
            raise TransactionError("No active transaction to commit.")

        savepoint_name = self._stack.pop()
        if savepoint_name is None:
            self.storage.commit()
            return
        self.storage.release_savepoint(savepoint_name)

    def rollback(self) -> None:
        if self.depth == 0:
            raise TransactionError("No active transaction to roll back.")

        savepoint_name = self._stack.pop()
        if savepoint_name is None:
            self.storage.rollback()
            return
        self.storage.rollback_to_savepoint(savepoint_name)
        self.storage.release_savepoint(savepoint_name)

    def reset(self) -> None:
        """
        Roll back every open level; used when a context closes mid-transaction.
        """
        while self.depth:
            self.rollback()

    def _next_savepoint_name(self) -> str:
        return f"sp_{next(self._savepoint_counter)}"
