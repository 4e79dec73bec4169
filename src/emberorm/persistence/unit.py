"""
Persistence unit: the long-lived holder of storage, configuration and hooks
from which short-lived persistence contexts are opened.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from ..config import ContextConfig
from ..utils import get_logger
from ..utils.logging import ROOT_LOGGER
from .context import PersistenceContext

if TYPE_CHECKING:
    from ..hooks import HookDispatcher
    from ..storage.base import StorageBackend


class PersistenceUnit:
    """
    Opens one :class:`PersistenceContext` per unit of work::

        unit = PersistenceUnit(InMemoryStorage())
        with unit.open() as context:
            context.save(Team(name="A"))
    """

    def __init__(
        self,
        storage: "StorageBackend",
        *,
        config: Optional[ContextConfig] = None,
        hooks: Optional["HookDispatcher"] = None,
    ) -> None:
        self.storage = storage
        self.config = config or ContextConfig()
        self.hooks = hooks
        self.logger = get_logger("persistence.unit")
        if self.config.log_level is not None:
            logging.getLogger(ROOT_LOGGER).setLevel(self.config.log_level)

    @classmethod
    def from_env(cls, storage: "StorageBackend", *, prefix: str = "EMBERORM_", **kwargs) -> "PersistenceUnit":
        return cls(storage, config=ContextConfig.from_env(prefix), **kwargs)

    def open(self) -> PersistenceContext:
        context = PersistenceContext(self.storage, config=self.config, hooks=self.hooks)
        self.logger.debug(
            "Opened persistence context",
            extra={"flush_mode": self.config.flush_mode.value, "storage": type(self.storage).__name__},
        )
        return context
