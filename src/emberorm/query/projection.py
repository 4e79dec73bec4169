"""
DTO projections: copy entity state into plain dataclasses so callers never
hold managed entities outside the unit of work.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Iterable, List, Type, TypeVar

D = TypeVar("D")


def resolve_path(instance: Any, path: str) -> Any:
    """
    Follow a dotted attribute path, loading lazy references on the way.
    A ``None`` link short-circuits to ``None``.
    """
    value = instance
    for segment in path.split("."):
        if value is None:
            return None
        value = getattr(value, segment)
    return value


def project(instance: Any, dto_type: Type[D], **paths: str) -> D:
    """
    Build ``dto_type`` (a dataclass) from ``instance``. Each DTO field reads the
    attribute of the same name unless ``paths`` maps it elsewhere::

        project(member, MemberDto, team_name="team.name")
    """
    if not dataclasses.is_dataclass(dto_type):
        raise TypeError(f"{dto_type!r} is not a dataclass")
    unknown = set(paths) - {f.name for f in dataclasses.fields(dto_type)}
    if unknown:
        raise ValueError(f"{dto_type.__name__} has no field(s): {', '.join(sorted(unknown))}")
    values = {
        f.name: resolve_path(instance, paths.get(f.name, f.name))
        for f in dataclasses.fields(dto_type)
        if f.init
    }
    return dto_type(**values)


def project_all(instances: Iterable[Any], dto_type: Type[D], **paths: str) -> List[D]:
    return [project(instance, dto_type, **paths) for instance in instances]
