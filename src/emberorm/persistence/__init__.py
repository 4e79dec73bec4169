"""
Persistence layer components: contexts, unit of work, identity map, snapshots.
"""

from .context import ContextState, PersistenceContext
from .identity_map import IdentityMap
from .snapshot import Snapshot, SnapshotStore
from .transaction import TransactionManager
from .unit import PersistenceUnit
from .unit_of_work import DELETE, INSERT, UPDATE, UnitOfWork, WriteOperation

__all__ = [
    "ContextState",
    "DELETE",
    "INSERT",
    "IdentityMap",
    "PersistenceContext",
    "PersistenceUnit",
    "Snapshot",
    "SnapshotStore",
    "TransactionManager",
    "UPDATE",
    "UnitOfWork",
    "WriteOperation",
]
