"""
Entity references: lazy placeholders, foreign keys and reverse collections.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple, Type, Union, cast

from ..errors import ReferenceNotFound, StaleReference
from .fields import Field

if TYPE_CHECKING:
    from ..persistence.context import PersistenceContext
    from .model import Model


@dataclass(frozen=True)
class Loaded:
    """Reference whose target instance is in memory."""

    value: "Model"

    is_loaded = True

    @property
    def model(self) -> type:
        return type(self.value)

    @property
    def key(self) -> Any:
        return self.value.pk

    def resolve(self) -> "Model":
        return self.value


@dataclass
class Unloaded:
    """
    Reference holding only the target's key. Resolution goes through the
    context that produced it.
    """

    model: type
    key: Any
    context: Optional["PersistenceContext"] = None

    is_loaded = False

    def resolve(self) -> "Model":
        context = self.context
        if context is None or context.closed:
            raise StaleReference(
                f"Cannot load {self.model.__name__}#{self.key!r}: no open persistence context"
            )
        instance = context.find_by_id(self.model, self.key)
        if instance is None:
            raise ReferenceNotFound(self.model, self.key)
        return instance


Reference = Union[Loaded, Unloaded]


class ForeignKey(Field):
    """
    Many-to-one reference from a child entity to its owning parent.

    The child stores a :class:`Loaded` or :class:`Unloaded` reference;
    snapshots and storage only ever see the parent's key.
    """

    def __init__(
        self,
        to: Type | str,
        *,
        related_name: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("nullable", True)
        super().__init__(**kwargs)
        self.to = to
        self.related_name = related_name
        self.remote_model: Optional[Type] = to if isinstance(to, type) else None

    def contribute_to_class(self, model: Type, name: str) -> None:
        if self.db_column is None:
            self.db_column = f"{name}_id"
        super().contribute_to_class(model, name)

    def resolve_model(self, model: Type) -> None:
        self.remote_model = model

    def require_remote_model(self) -> Type:
        if self.remote_model is None:
            raise ValueError(f"Relation target '{self.to}' is not resolved.")
        return self.remote_model

    def __get__(self, instance: object | None, owner: type | None = None) -> Any:
        if instance is None:
            return self
        model_instance = cast("Model", instance)
        name = self.require_name()
        reference = model_instance._field_values.get(name)
        if reference is None:
            return None
        if isinstance(reference, Unloaded):
            value = reference.resolve()
            model_instance._field_values[name] = Loaded(value)
            return value
        return reference.value

    def __set__(self, instance: object, value: Any) -> None:
        model_instance = cast("Model", instance)
        name = self.require_name()
        if value is None:
            if not self.nullable:
                raise ValueError(f"Field '{name}' cannot be None")
            model_instance._field_values[name] = None
            return
        if isinstance(value, (Loaded, Unloaded)):
            model_instance._field_values[name] = value
            return
        remote = self.require_remote_model()
        if isinstance(value, remote):
            model_instance._field_values[name] = Loaded(value)
            return
        if hasattr(value, "_meta"):
            raise ValueError(
                f"Field '{name}' expects {remote.__name__}, received {type(value).__name__}"
            )
        model_instance._field_values[name] = Unloaded(remote, value, model_instance._context)

    def reference(self, instance: "Model") -> Optional[Reference]:
        return instance._field_values.get(self.require_name())

    def storage_value(self, instance: "Model") -> Any:
        reference = self.reference(instance)
        if reference is None:
            return None
        return reference.key


class RelatedCollection:
    """
    Non-owning, lazily populated view of the children pointing at ``owner``.
    """

    def __init__(self, owner: "Model", source_model: Type, field: ForeignKey) -> None:
        self.owner = owner
        self.model = source_model
        self.field = field
        self._items: Optional[List["Model"]] = None

    @property
    def is_loaded(self) -> bool:
        return self._items is not None

    def _load(self) -> List["Model"]:
        if self._items is None:
            from ..query.expressions import Q

            context = self.owner._context
            if context is None or context.closed:
                raise StaleReference(
                    f"Cannot load '{self.field.related_name}' of {self.owner!r}: entity is detached"
                )
            pk_name = self.model._meta.primary_key.name
            self._items = list(
                context.find_all(
                    self.model, Q(**{self.field.require_name(): self.owner.pk}), order_by=(pk_name,)
                )
            )
        return self._items

    def __iter__(self) -> Iterator["Model"]:
        return iter(self._load())

    def __len__(self) -> int:
        return len(self._load())

    def __getitem__(self, index: int) -> "Model":
        return self._load()[index]

    def __repr__(self) -> str:
        state = f"{len(self._items)} loaded" if self._items is not None else "unloaded"
        return f"<RelatedCollection {self.model.__name__} ({state})>"


class RelatedAccessor:
    def __init__(self, source_model: Type, field: ForeignKey) -> None:
        self.source_model = source_model
        self.field = field

    def __get__(self, instance, owner):
        if instance is None:
            return self
        name = self.field.related_name or f"{self.source_model.__name__.lower()}_set"
        collection = instance._related_cache.get(name)
        if collection is None:
            collection = RelatedCollection(instance, self.source_model, self.field)
            instance._related_cache[name] = collection
        return collection


class RelationRegistry:
    def __init__(self) -> None:
        self.models: Dict[str, Type] = {}
        self.pending_fields: List[Tuple[Type, ForeignKey]] = []

    def register_model(self, model: Type) -> None:
        self.models[model.__name__] = model
        self._resolve_pending()

    def register_field(self, model: Type, field: ForeignKey) -> None:
        target = self._resolve_target(field.to)
        if target is None:
            self.pending_fields.append((model, field))
            return
        field.resolve_model(target)
        self._attach_reverse_accessor(model, field)

    def _resolve_pending(self) -> None:
        unresolved = []
        for model, field in self.pending_fields:
            target = self._resolve_target(field.to)
            if target is None:
                unresolved.append((model, field))
                continue
            field.resolve_model(target)
            self._attach_reverse_accessor(model, field)
        self.pending_fields = unresolved

    def _resolve_target(self, target: Type | str) -> Optional[Type]:
        if isinstance(target, type):
            return target
        return self.models.get(target.split(".")[-1])

    def _attach_reverse_accessor(self, model: Type, field: ForeignKey) -> None:
        remote = field.remote_model
        if remote is None:
            return
        related_name = field.related_name or f"{model.__name__.lower()}_set"
        if related_name in remote.__dict__:
            return
        setattr(remote, related_name, RelatedAccessor(model, field))


relation_registry = RelationRegistry()
