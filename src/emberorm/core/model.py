"""
Entity base class and metadata collection for EmberORM.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional, Type

from ..utils import camel_to_snake
from .fields import AutoField, Field
from .relations import ForeignKey, relation_registry

if TYPE_CHECKING:
    from ..persistence.context import PersistenceContext


class ModelConfigurationError(Exception):
    """Raised when a model class is misconfigured."""


@dataclass
class ModelOptions:
    """
    Container for model metadata calculated by :class:`ModelMeta`.
    """

    model: Type["Model"]
    table_name: str = ""
    abstract: bool = False
    fields: "OrderedDict[str, Field]" = field(default_factory=OrderedDict)
    primary_key: Optional[Field] = None

    def add_field(self, field_obj: Field) -> None:
        if field_obj.name in self.fields:
            raise ModelConfigurationError(
                f"Duplicate field name '{field_obj.name}' on model '{self.model.__name__}'"
            )
        self.fields[field_obj.name] = field_obj
        if field_obj.primary_key:
            if self.primary_key and self.primary_key is not field_obj:
                raise ModelConfigurationError(
                    f"Multiple primary keys defined on model '{self.model.__name__}'"
                )
            self.primary_key = field_obj

    def get_field(self, name: str) -> Field:
        try:
            return self.fields[name]
        except KeyError as exc:
            raise KeyError(f"Unknown field '{name}' on model '{self.model.__name__}'") from exc

    def get_fields(self) -> Iterable[Field]:
        return self.fields.values()

    def references(self) -> Iterable[ForeignKey]:
        return [f for f in self.fields.values() if isinstance(f, ForeignKey)]


class ModelMeta(type):
    """
    Metaclass responsible for collecting fields and establishing metadata.
    """

    def __new__(mcls, name: str, bases: tuple[type, ...], attrs: Dict[str, Any]) -> "ModelMeta":
        if name == "Model" and bases == (object,):
            return super().__new__(mcls, name, bases, attrs)

        declared_fields: Dict[str, Field] = {}
        for attr_name, value in list(attrs.items()):
            if isinstance(value, Field):
                declared_fields[attr_name] = attrs.pop(attr_name)

        cls = super().__new__(mcls, name, bases, attrs)

        meta = getattr(cls, "Meta", None)
        table_name = camel_to_snake(name)
        abstract = False
        if meta:
            table_name = getattr(meta, "table", table_name)
            abstract = getattr(meta, "abstract", False)

        cls._meta = ModelOptions(model=cls, table_name=table_name, abstract=abstract)

        sorted_fields = sorted(declared_fields.items(), key=lambda item: item[1].creation_counter)
        for attr_name, field_obj in sorted_fields:
            field_obj.contribute_to_class(cls, attr_name)
            cls._meta.add_field(field_obj)
            if isinstance(field_obj, ForeignKey):
                relation_registry.register_field(cls, field_obj)

        if not cls._meta.primary_key and not cls._meta.abstract:
            if "id" in cls._meta.fields:
                raise ModelConfigurationError(
                    f"Model '{cls.__name__}' defines a field named 'id' but no primary key. "
                    "Either set primary_key=True on that field or define a different name."
                )
            auto_field = AutoField()
            auto_field.contribute_to_class(cls, "id")
            cls._meta.add_field(auto_field)
            cls._meta.fields = OrderedDict(
                sorted(
                    cls._meta.fields.items(),
                    key=lambda item: (0 if item[0] == "id" else 1, item[1].creation_counter),
                )
            )

        relation_registry.register_model(cls)
        return cls


class Model(metaclass=ModelMeta):
    """
    Base entity providing field storage. Persistence is the job of a
    :class:`~emberorm.persistence.PersistenceContext`.
    """

    _meta: ModelOptions

    def __init__(self, **kwargs: Any) -> None:
        self._field_values: Dict[str, Any] = {}
        self._related_cache: Dict[str, Any] = {}
        self._context: Optional["PersistenceContext"] = None

        unknown = set(kwargs) - set(self._meta.fields)
        if unknown:
            raise TypeError(
                f"{self.__class__.__name__} got unexpected field(s): {', '.join(sorted(unknown))}"
            )

        for field_obj in self._meta.get_fields():
            if field_obj.name in kwargs:
                setattr(self, field_obj.name, kwargs[field_obj.name])
            elif field_obj.has_default:
                setattr(self, field_obj.name, field_obj.get_default())

    def __repr__(self) -> str:
        field_parts = ", ".join(
            f"{name}={self._display_value(name)!r}" for name in self._meta.fields if name in self._field_values
        )
        return f"<{self.__class__.__name__} {field_parts}>"

    def _display_value(self, name: str) -> Any:
        value = self._field_values.get(name)
        if isinstance(self._meta.fields[name], ForeignKey) and value is not None:
            return value.key
        return value

    @property
    def pk(self) -> Any:
        if not self._meta.primary_key:
            raise ModelConfigurationError(
                f"Model '{self.__class__.__name__}' does not define a primary key."
            )
        return self._field_values.get(self._meta.primary_key.name)

    @classmethod
    def from_storage(cls, row: Dict[str, Any], context: Optional["PersistenceContext"] = None) -> "Model":
        """
        Build an instance from a storage row without running defaults.
        References are left unloaded and bound to ``context``.
        """
        instance = cls.__new__(cls)
        instance._field_values = {}
        instance._related_cache = {}
        instance._context = context
        for field_obj in cls._meta.get_fields():
            if field_obj.name in row:
                setattr(instance, field_obj.name, row[field_obj.name])
        return instance

    def to_storage(self, *, include_pk: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for field_obj in self._meta.get_fields():
            if field_obj.primary_key and (not include_pk or self.pk is None):
                continue
            data[field_obj.require_name()] = field_obj.storage_value(self)
        return data

    @classmethod
    def register_hook(cls, event: str, handler) -> None:
        from ..hooks import hooks

        hooks.register(event, handler, model=cls)
