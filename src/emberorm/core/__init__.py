"""
Core building blocks for EmberORM entities.
"""

from .fields import (
    AutoField,
    BooleanField,
    DateTimeField,
    Field,
    FloatField,
    IntegerField,
    StringField,
)
from .model import Model, ModelConfigurationError, ModelMeta, ModelOptions
from .relations import ForeignKey, Loaded, RelatedCollection, Unloaded

__all__ = [
    "AutoField",
    "BooleanField",
    "DateTimeField",
    "Field",
    "FloatField",
    "ForeignKey",
    "IntegerField",
    "Loaded",
    "Model",
    "ModelConfigurationError",
    "ModelMeta",
    "ModelOptions",
    "RelatedCollection",
    "StringField",
    "Unloaded",
]
