"""
Storage collaborators consumed by the persistence context.
"""

from .base import (
    IntegrityError,
    RowNotFound,
    StorageBackend,
    StorageConfigurationError,
    StorageError,
    TransactionalStorage,
)
from .memory import InMemoryStorage
from .sqlite import SQLiteStorage

__all__ = [
    "InMemoryStorage",
    "IntegrityError",
    "RowNotFound",
    "SQLiteStorage",
    "StorageBackend",
    "StorageConfigurationError",
    "StorageError",
    "TransactionalStorage",
]
