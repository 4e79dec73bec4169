"""
Hook dispatcher coordinating persistence lifecycle events.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Type

HookHandler = Callable[..., None]

EVENTS = frozenset(
    {
        "after_load",
        "before_save",
        "after_save",
        "before_delete",
        "after_delete",
        "after_flush",
        "after_commit",
    }
)


class HookDispatcher:
    """
    Maintains global and per-model hook handlers.

    Handlers receive the entity (``None`` for context-wide events) and keyword
    context such as ``context=`` and ``created=``.
    """

    def __init__(self) -> None:
        self._global_handlers: Dict[str, List[HookHandler]] = defaultdict(list)
        self._model_handlers: Dict[type, Dict[str, List[HookHandler]]] = defaultdict(
            lambda: defaultdict(list)
        )

    def register(self, event: str, handler: HookHandler, *, model: Optional[Type] = None) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown hook event '{event}'")
        if model:
            self._model_handlers[model][event].append(handler)
        else:
            self._global_handlers[event].append(handler)

    def fire(self, event: str, instance: Optional[Any], **context: Any) -> None:
        handlers = list(self._global_handlers.get(event, []))
        if instance is not None:
            handlers.extend(self._model_handlers.get(type(instance), {}).get(event, []))
        for handler in handlers:
            handler(instance, **context)

    def clear(self) -> None:
        self._global_handlers.clear()
        self._model_handlers.clear()


hooks = HookDispatcher()
