"""
EmberORM public package initialization.

A persistence context (identity map, snapshot dirty checking and a unit of
work) over a pluggable storage collaborator.
"""

from .config import ContextConfig, FlushMode  # noqa: F401
from .core.fields import (
    AutoField,
    BooleanField,
    DateTimeField,
    FloatField,
    IntegerField,
    StringField,
)  # noqa: F401
from .core.model import Model, ModelConfigurationError  # noqa: F401
from .core.relations import ForeignKey, Loaded, Unloaded  # noqa: F401
from .errors import (  # noqa: F401
    ConcurrentAccessError,
    ConfigurationError,
    ContextClosed,
    ContextStateError,
    DuplicateIdentity,
    EntityStateError,
    FlushFailure,
    PersistenceError,
    ReferenceNotFound,
    StaleReference,
    TransactionError,
)
from .hooks import hooks  # noqa: F401
from .persistence import PersistenceContext, PersistenceUnit, WriteOperation  # noqa: F401
from .query import Attr, Page, PageRequest, Q, QuerySet, Slice, project, project_all  # noqa: F401
from .storage import InMemoryStorage, SQLiteStorage  # noqa: F401

__all__ = [
    "Attr",
    "AutoField",
    "BooleanField",
    "ConcurrentAccessError",
    "ConfigurationError",
    "ContextClosed",
    "ContextConfig",
    "ContextStateError",
    "DateTimeField",
    "DuplicateIdentity",
    "EntityStateError",
    "FloatField",
    "FlushFailure",
    "FlushMode",
    "ForeignKey",
    "InMemoryStorage",
    "IntegerField",
    "Loaded",
    "Model",
    "ModelConfigurationError",
    "Page",
    "PageRequest",
    "PersistenceContext",
    "PersistenceError",
    "PersistenceUnit",
    "Q",
    "QuerySet",
    "ReferenceNotFound",
    "SQLiteStorage",
    "Slice",
    "StaleReference",
    "StringField",
    "TransactionError",
    "Unloaded",
    "WriteOperation",
    "hooks",
    "project",
    "project_all",
]
