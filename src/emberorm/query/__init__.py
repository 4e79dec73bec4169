"""
Query primitives: predicates, paging, projections and the QuerySet.
"""

from .expressions import Attr, Comparison, Q
from .paging import Page, PageRequest, Slice
from .projection import project, project_all, resolve_path
from .queryset import QuerySet

__all__ = [
    "Attr",
    "Comparison",
    "Page",
    "PageRequest",
    "Q",
    "QuerySet",
    "Slice",
    "project",
    "project_all",
    "resolve_path",
]
