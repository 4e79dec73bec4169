"""
Error hierarchy raised by the persistence context.
"""

from __future__ import annotations

from typing import Any, Optional


class PersistenceError(RuntimeError):
    """Base error for persistence context failures."""


class DuplicateIdentity(PersistenceError):
    """A second, distinct instance was registered under a bound identity."""

    def __init__(self, model: type, key: Any) -> None:
        self.model = model
        self.key = key
        super().__init__(
            f"Identity {model.__name__}#{key!r} is already bound to a different instance"
        )


class ContextClosed(PersistenceError):
    """The persistence context was used after close()."""


class ContextStateError(PersistenceError):
    """The operation is not allowed in the context's current state."""


class ConcurrentAccessError(PersistenceError):
    """The context was used from a thread other than its owner."""


class EntityStateError(PersistenceError):
    """The entity's lifecycle state does not permit the operation."""


class StaleReference(PersistenceError):
    """A lazy reference was resolved after its owning context closed."""


class ReferenceNotFound(PersistenceError):
    """A lazy reference points at a row that no longer exists."""

    def __init__(self, model: type, key: Any) -> None:
        self.model = model
        self.key = key
        super().__init__(f"Referenced {model.__name__}#{key!r} does not exist")


class FlushFailure(PersistenceError):
    """
    A write failed during flush. The original storage error is chained as
    ``__cause__``; writes executed before the failure are not undone.
    """

    def __init__(
        self,
        operation: str,
        model: type,
        key: Any,
        instance: Optional[object] = None,
    ) -> None:
        self.operation = operation
        self.model = model
        self.key = key
        self.instance = instance
        super().__init__(f"Flush failed on {operation} of {model.__name__}#{key!r}")


class TransactionError(PersistenceError):
    """Raised on transaction misuse (commit without begin, unsupported nesting)."""


class ConfigurationError(ValueError):
    """Raised when configuration values cannot be parsed."""
