"""
SQLite storage collaborator built on the stdlib sqlite3 module.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlsplit

from ..core.fields import AutoField, BooleanField, DateTimeField, Field, FloatField, IntegerField
from ..core.relations import ForeignKey
from ..query.expressions import Comparison, Q
from ..utils import get_logger, time_call
from ..utils.redaction import redact_value
from .base import IntegrityError, Row, RowNotFound, StorageConfigurationError, StorageError

if TYPE_CHECKING:
    from ..core.model import Model


_COLUMN_TYPES = (
    (AutoField, "INTEGER PRIMARY KEY AUTOINCREMENT"),
    (ForeignKey, "INTEGER"),
    (BooleanField, "INTEGER"),
    (IntegerField, "INTEGER"),
    (FloatField, "REAL"),
    (DateTimeField, "TEXT"),
)

_OPERATORS = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return tuple(_to_db(item) for item in value)
    return value


class SQLiteStorage:
    """
    One table per entity type; rows are exchanged as field-name dictionaries.
    The connection runs in autocommit mode unless a transaction is begun.
    """

    def __init__(self, path: str = ":memory:", *, timeout: float = 5.0, slow_query_ms: int = 200) -> None:
        self.path = path
        self.slow_query_ms = slow_query_ms
        self.logger = get_logger("storage.sqlite")
        self._connection: sqlite3.Connection | None = sqlite3.connect(
            path, isolation_level=None, timeout=timeout, check_same_thread=False
        )
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "SQLiteStorage":
        """
        Accepts ``sqlite:///:memory:`` or ``sqlite:///path/to.db?timeout=2.5``.
        """
        parts = urlsplit(url)
        if parts.scheme != "sqlite":
            raise StorageConfigurationError(f"Unsupported storage URL scheme '{parts.scheme}'")
        path = parts.path[1:] if parts.path.startswith("/") else parts.path
        if not path:
            raise StorageConfigurationError("SQLite URL must name a database path")
        for key, value in parse_qsl(parts.query):
            if key != "timeout":
                raise StorageConfigurationError(f"Unknown SQLite option '{key}'")
            try:
                kwargs.setdefault("timeout", float(value))
            except ValueError as exc:
                raise StorageConfigurationError(f"Invalid float value for 'timeout': {value!r}") from exc
        return cls(path, **kwargs)

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------ #
    # Schema
    # ------------------------------------------------------------------ #
    def create_table(self, model: type["Model"]) -> None:
        columns = []
        for field in model._meta.get_fields():
            definition = f"{_quote(field.column_name())} {self._column_type(field)}"
            if field.primary_key and not isinstance(field, AutoField):
                definition += " PRIMARY KEY"
            elif not field.nullable and not field.primary_key:
                definition += " NOT NULL"
            if isinstance(field, ForeignKey):
                remote = field.require_remote_model()
                definition += (
                    f" REFERENCES {_quote(remote._meta.table_name)}"
                    f"({_quote(remote._meta.primary_key.column_name())})"
                )
            columns.append(definition)
        self.execute(f"CREATE TABLE IF NOT EXISTS {_quote(model._meta.table_name)} ({', '.join(columns)})")

    @staticmethod
    def _column_type(field: Field) -> str:
        for field_type, column_type in _COLUMN_TYPES:
            if isinstance(field, field_type):
                return column_type
        return "TEXT"

    # ------------------------------------------------------------------ #
    # Row operations
    # ------------------------------------------------------------------ #
    def insert(self, model: type["Model"], fields: Row) -> Any:
        names = list(fields)
        columns = ", ".join(_quote(model._meta.get_field(name).column_name()) for name in names)
        placeholders = ", ".join("?" for _ in names)
        table = _quote(model._meta.table_name)
        if names:
            sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {table} DEFAULT VALUES"
        cursor = self.execute(sql, [fields[name] for name in names])
        key = fields.get(model._meta.primary_key.name)
        return key if key is not None else cursor.lastrowid

    def update(self, model: type["Model"], key: Any, changed: Row) -> None:
        if not changed:
            return
        assignments = ", ".join(
            f"{_quote(model._meta.get_field(name).column_name())} = ?" for name in changed
        )
        sql = f"UPDATE {_quote(model._meta.table_name)} SET {assignments} WHERE {self._pk_column(model)} = ?"
        cursor = self.execute(sql, [*changed.values(), key])
        if cursor.rowcount == 0:
            raise RowNotFound(f"{model.__name__}#{key!r} does not exist")

    def delete(self, model: type["Model"], key: Any) -> None:
        sql = f"DELETE FROM {_quote(model._meta.table_name)} WHERE {self._pk_column(model)} = ?"
        cursor = self.execute(sql, [key])
        if cursor.rowcount == 0:
            raise RowNotFound(f"{model.__name__}#{key!r} does not exist")

    def read_by_id(self, model: type["Model"], key: Any) -> Optional[Row]:
        sql = (
            f"SELECT {self._select_list(model)} FROM {_quote(model._meta.table_name)} "
            f"WHERE {self._pk_column(model)} = ? LIMIT 1"
        )
        row = self.execute(sql, [key]).fetchone()
        return self._to_row(row) if row is not None else None

    def read_many(
        self,
        model: type["Model"],
        predicate: Optional[Q],
        offset: int = 0,
        limit: Optional[int] = None,
        order_by: Sequence[str] = (),
        *,
        with_total: bool = True,
    ) -> Tuple[List[Row], Optional[int]]:
        table = _quote(model._meta.table_name)
        where_sql, params = self._compile_where(model, predicate)
        where_clause = f" WHERE {where_sql}" if where_sql else ""
        total = None
        if with_total:
            total = self.execute(f"SELECT COUNT(*) FROM {table}{where_clause}", params).fetchone()[0]
        if limit == 0:
            return [], total

        ordering = [self._compile_ordering(model, entry) for entry in order_by]
        pk_name = model._meta.primary_key.name
        if not any(entry.lstrip("-") == pk_name for entry in order_by):
            # stable windows across pages
            ordering.append(self._pk_column(model))
        sql = f"SELECT {self._select_list(model)} FROM {table}{where_clause} ORDER BY {', '.join(ordering)}"
        sql += " LIMIT ? OFFSET ?"
        rows = self.execute(sql, [*params, -1 if limit is None else limit, offset]).fetchall()
        return [self._to_row(row) for row in rows], total

    def bulk_update(self, model: type["Model"], predicate: Optional[Q], changes: Row) -> int:
        if not changes:
            return 0
        assignments = ", ".join(
            f"{_quote(model._meta.get_field(name).column_name())} = ?" for name in changes
        )
        where_sql, params = self._compile_where(model, predicate)
        sql = f"UPDATE {_quote(model._meta.table_name)} SET {assignments}"
        if where_sql:
            sql += f" WHERE {where_sql}"
        cursor = self.execute(sql, [*changes.values(), *params])
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Transactions
    # ------------------------------------------------------------------ #
    def begin(self) -> None:
        self.execute("BEGIN")

    def commit(self) -> None:
        self.execute("COMMIT")

    def rollback(self) -> None:
        self.execute("ROLLBACK")

    def savepoint(self, name: str) -> None:
        self.execute(f"SAVEPOINT {_quote(name)}")

    def release_savepoint(self, name: str) -> None:
        self.execute(f"RELEASE SAVEPOINT {_quote(name)}")

    def rollback_to_savepoint(self, name: str) -> None:
        self.execute(f"ROLLBACK TO SAVEPOINT {_quote(name)}")

    # ------------------------------------------------------------------ #
    def execute(self, sql: str, params: Sequence[Any] | None = None) -> sqlite3.Cursor:
        if self._connection is None:
            raise StorageError("SQLiteStorage is closed.")
        values = [_to_db(value) for value in params or ()]
        try:
            with time_call(
                "sqlite.execute",
                self.logger,
                threshold_ms=self.slow_query_ms,
                sql=sql,
                params=[redact_value(value) for value in values],
            ):
                return self._connection.execute(sql, values)
        except sqlite3.IntegrityError as exc:
            raise IntegrityError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    def _pk_column(self, model: type["Model"]) -> str:
        return _quote(model._meta.primary_key.column_name())

    def _select_list(self, model: type["Model"]) -> str:
        return ", ".join(
            f"{_quote(field.column_name())} AS {_quote(field.require_name())}"
            for field in model._meta.get_fields()
        )

    @staticmethod
    def _to_row(row: sqlite3.Row) -> Row:
        return {name: row[name] for name in row.keys()}

    def _compile_ordering(self, model: type["Model"], entry: str) -> str:
        descending = entry.startswith("-")
        name = entry[1:] if descending else entry
        clause = _quote(model._meta.get_field(name).column_name())
        return f"{clause} DESC" if descending else clause

    def _compile_where(self, model: type["Model"], predicate: Optional[Q]) -> Tuple[str, List[Any]]:
        if predicate is None or predicate.is_empty():
            if predicate is not None and predicate.negated:
                return "0", []
            return "", []
        parts: List[str] = []
        params: List[Any] = []
        for child in predicate.children:
            if isinstance(child, Q):
                child_sql, child_params = self._compile_where(model, child)
                child_sql = child_sql or "1"
            else:
                child_sql, child_params = self._compile_comparison(model, child)
            parts.append(f"({child_sql})")
            params.extend(child_params)
        sql = f" {predicate.connector} ".join(parts)
        if predicate.negated:
            sql = f"NOT ({sql})"
        return sql, params

    def _compile_comparison(self, model: type["Model"], node: Comparison) -> Tuple[str, List[Any]]:
        # every comparison yields 0 or 1, never NULL, so NOT matches Q.matches
        column = _quote(model._meta.get_field(node.field).column_name())
        lookup, value = node.lookup, node.value
        if lookup == "isnull":
            return f"{column} IS {'' if value else 'NOT '}NULL", []
        if lookup == "exact":
            return f"{column} IS ?", [value]
        if lookup == "ne":
            return f"{column} IS NOT ?", [value]
        if lookup == "in":
            if not value:
                return "0", []
            return f"COALESCE({column} IN ({', '.join('?' for _ in value)}), 0)", list(value)
        if lookup == "contains":
            return f"COALESCE(instr({column}, ?), 0) > 0", [value]
        if lookup == "icontains":
            return f"COALESCE(instr(lower({column}), lower(?)), 0) > 0", [value]
        if value is None:
            return "0", []
        return f"({column} IS NOT NULL AND {column} {_OPERATORS[lookup]} ?)", [value]
