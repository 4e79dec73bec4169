"""
Persistence context coordinating the identity map, snapshots, unit of work
and the storage collaborator for one unit of work.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence, Tuple, Type, TypeVar, Union

from ..config import ContextConfig, FlushMode
from ..core.model import Model
from ..core.relations import ForeignKey, Loaded, Unloaded
from ..errors import (
    ConcurrentAccessError,
    ContextClosed,
    ContextStateError,
    EntityStateError,
    FlushFailure,
)
from ..query.expressions import Attr, Q
from ..query.paging import Page, PageRequest, Slice
from ..utils import get_logger, time_call
from ..utils.performance import PerformanceTracker
from ..utils.redaction import redact_fields
from .identity_map import IdentityMap
from .snapshot import SnapshotStore
from .transaction import TransactionManager
from .unit_of_work import DELETE, INSERT, UPDATE, UnitOfWork, WriteOperation

if TYPE_CHECKING:
    from ..hooks import HookDispatcher
    from ..query.queryset import QuerySet
    from ..storage.base import StorageBackend


M = TypeVar("M", bound=Model)


class ContextState(str, Enum):
    OPEN = "open"
    FLUSHING = "flushing"
    FLUSHED = "flushed"
    FAILED = "failed"
    CLOSED = "closed"


class PersistenceContext:
    """
    Tracks entities for a single unit of work.

    A context belongs to the thread that created it. Entities saved or loaded
    through it are managed until the context is cleared or closed; writes are
    buffered until :meth:`flush`.
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
        if hooks is None:
            from ..hooks import hooks as default_hooks

            hooks = default_hooks
        self.hooks = hooks
        self.identity_map = IdentityMap()
        self.snapshots = SnapshotStore()
        self.unit_of_work = UnitOfWork()
        self.transaction_manager = TransactionManager(storage)
        self.logger = get_logger("persistence.context")
        self.performance = PerformanceTracker(
            get_logger("persistence.performance"),
            n_plus_one_threshold=self.config.n_plus_one_threshold,
        )
        self.state = ContextState.OPEN
        self._owner = threading.get_ident()

    # ------------------------------------------------------------------ #
    # Context management
    # ------------------------------------------------------------------ #
    def __enter__(self) -> "PersistenceContext":
        if self.transaction_manager.supported:
            self.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self.closed:
                return
            if exc_type:
                self.rollback()
            else:
                self.commit()
        finally:
            self.close()

    @property
    def closed(self) -> bool:
        return self.state is ContextState.CLOSED

    def close(self) -> None:
        if self.closed:
            return
        self._check_owner()
        if self.transaction_manager.depth:
            self.logger.warning("Closing context with an open transaction; rolling back")
            self.transaction_manager.reset()
        self._detach_all()
        self.state = ContextState.CLOSED
        self.logger.debug("Persistence context closed")

    # ------------------------------------------------------------------ #
    # Transactions
    # ------------------------------------------------------------------ #
    def begin(self) -> None:
        self._ensure_open()
        if self.transaction_manager.depth:
            # savepoints only cover work that already reached storage
            self.flush()
        self.transaction_manager.begin()

    def commit(self) -> None:
        self._ensure_open()
        self.flush()
        if self.transaction_manager.depth:
            self.transaction_manager.commit()
        if self.transaction_manager.depth == 0:
            self.hooks.fire("after_commit", None, context=self)

    def rollback(self) -> None:
        """
        Roll back the innermost transaction level and discard all tracked state.
        """
        self._ensure_open()
        if self.transaction_manager.depth:
            self.transaction_manager.rollback()
        self.clear()

    @contextmanager
    def transaction(self):
        """
        Transaction scope; nested scopes use savepoints.
        """
        self.begin()
        try:
            yield self
        except Exception:
            self.rollback()
            raise
        else:
            try:
                self.commit()
            except Exception:
                self.rollback()
                raise

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #
    def save(self, instance: M) -> M:
        """
        Make a transient instance managed. The insert is deferred to flush;
        instances without a key receive one from storage at that point.
        """
        self._ensure_mutable()
        uow = self.unit_of_work
        if uow.is_removed(instance):
            key = uow.cancel_removal(instance)
            self.identity_map.register(type(instance), key, instance)
            self._touch()
            return instance
        if uow.is_new(instance) or uow.is_managed(instance):
            return instance
        owner = instance._context
        if owner is not None and owner is not self and not owner.closed:
            raise EntityStateError(f"{instance!r} is managed by another persistence context")

        key = instance.pk
        if key is not None:
            self.identity_map.register(type(instance), key, instance)
        uow.register_new(instance)
        self._attach(instance)
        self._touch()
        self.logger.debug("Scheduled insert of %s", type(instance).__name__)
        return instance

    def merge(self, instance: M) -> M:
        """
        Copy a detached instance's state onto the managed instance with the same
        key and return the managed one. Transient instances are saved.
        """
        self._ensure_mutable()
        uow = self.unit_of_work
        if uow.is_new(instance) or uow.is_managed(instance):
            return instance
        model = type(instance)
        key = instance.pk
        if key is None:
            return self.save(instance)
        target = self.find_by_id(model, key)
        if target is None:
            target = model.from_storage({}, context=self)
            setattr(target, model._meta.primary_key.name, key)
            self._copy_state(instance, target)
            return self.save(target)
        self._copy_state(instance, target)
        self._touch()
        return target

    def remove(self, instance: Model) -> None:
        """
        Schedule deletion. The instance leaves the identity map now; the
        storage delete happens at flush.
        """
        self._ensure_mutable()
        uow = self.unit_of_work
        if uow.is_removed(instance):
            return
        if uow.is_new(instance):
            uow.forget(instance)
            if instance.pk is not None:
                self.identity_map.evict(type(instance), instance.pk)
            instance._context = None
            self._touch()
            return
        if not uow.is_managed(instance):
            raise EntityStateError(f"{instance!r} is not managed by this persistence context")
        key = uow.register_removed(instance)
        self.identity_map.evict(type(instance), key)
        self._touch()
        self.logger.debug("Scheduled delete of %s#%r", type(instance).__name__, key)

    def detach(self, instance: Model) -> None:
        """
        Stop tracking one instance, discarding its pending changes.
        """
        self._ensure_open()
        key = self.unit_of_work.key_of(instance)
        if key is None:
            key = instance.pk
        if key is not None and self.identity_map.lookup(type(instance), key) is instance:
            self.identity_map.evict(type(instance), key)
        self.unit_of_work.forget(instance)
        self.snapshots.forget(instance)
        instance._context = None

    def contains(self, instance: Model) -> bool:
        self._ensure_open()
        uow = self.unit_of_work
        return uow.is_managed(instance) or uow.is_new(instance)

    def clear(self) -> None:
        """
        Detach everything without flushing; later queries read storage again.
        """
        self._ensure_open()
        self._detach_all()
        self.state = ContextState.OPEN

    # ------------------------------------------------------------------ #
    # Flush
    # ------------------------------------------------------------------ #
    def flush(self) -> List[WriteOperation]:
        """
        Write pending inserts, updates and deletes, in that order, and return
        the executed operations. Stops at the first failing write.
        """
        self._ensure_open()
        if self.state is ContextState.FLUSHING:
            raise ContextStateError("flush() is already in progress")
        if self.state is ContextState.FAILED:
            raise ContextStateError("A previous flush failed; clear() or rollback() first")

        self.state = ContextState.FLUSHING
        operations: List[WriteOperation] = []
        uow = self.unit_of_work
        try:
            for instance in uow.pending_inserts():
                operations.append(self._flush_insert(instance))
            for instance in uow.managed_in_order():
                snapshot = self.snapshots.get(instance)
                changed = self.snapshots.diff(instance, snapshot) if snapshot else set()
                if changed:
                    operations.append(self._flush_update(instance, changed))
            for instance, key in uow.pending_deletes():
                operations.append(self._flush_delete(instance, key))
        except FlushFailure as failure:
            self.state = ContextState.FAILED
            self.logger.error(
                "Flush aborted after %d operation(s): %s",
                len(operations),
                failure,
                extra={"operation": failure.operation, "model": failure.model.__name__, "key": failure.key},
            )
            raise
        except Exception:
            self.state = ContextState.FAILED
            raise

        self.state = ContextState.FLUSHED
        if operations:
            self.logger.info("Flushed %d write operation(s)", len(operations))
            self.hooks.fire("after_flush", None, context=self, operations=list(operations))
        return operations

    def _flush_insert(self, instance: Model) -> WriteOperation:
        model = type(instance)
        operation = WriteOperation(INSERT, model, instance.pk, instance=instance)

        def write() -> None:
            self.hooks.fire("before_save", instance, context=self, created=True)
            operation.fields = self._storage_fields(instance, None)
            operation.key = self.storage.insert(model, dict(operation.fields))

        self._execute(operation, write)
        pk_name = model._meta.primary_key.name
        if instance.pk != operation.key:
            setattr(instance, pk_name, operation.key)
            operation.key = instance.pk
        self.identity_map.register(model, operation.key, instance)
        self.unit_of_work.register_managed(instance, operation.key)
        self.snapshots.remember(instance)
        self.hooks.fire("after_save", instance, context=self, created=True)
        return operation

    def _flush_update(self, instance: Model, changed: set) -> WriteOperation:
        model = type(instance)
        key = self.unit_of_work.key_of(instance)
        operation = WriteOperation(UPDATE, model, key, instance=instance)

        def write() -> None:
            if instance.pk != key:
                raise EntityStateError(
                    f"Primary key of managed {model.__name__}#{key!r} changed to {instance.pk!r}"
                )
            self.hooks.fire("before_save", instance, context=self, created=False)
            operation.fields = self._storage_fields(instance, changed)
            self.storage.update(model, key, dict(operation.fields))

        self._execute(operation, write)
        self.snapshots.remember(instance)
        self.hooks.fire("after_save", instance, context=self, created=False)
        return operation

    def _flush_delete(self, instance: Model, key: Any) -> WriteOperation:
        model = type(instance)
        operation = WriteOperation(DELETE, model, key, instance=instance)

        def write() -> None:
            self.hooks.fire("before_delete", instance, context=self)
            self.storage.delete(model, key)

        self._execute(operation, write)
        self.unit_of_work.forget(instance)
        self.snapshots.forget(instance)
        instance._context = None
        self.hooks.fire("after_delete", instance, context=self)
        return operation

    def _execute(self, operation: WriteOperation, write: Callable[[], None]) -> None:
        name = operation.model.__name__
        try:
            with time_call(
                f"storage.{operation.kind}",
                self.logger,
                threshold_ms=self.config.slow_call_ms,
                model=name,
                key=operation.key,
            ):
                write()
        except Exception as exc:
            raise FlushFailure(operation.kind, operation.model, operation.key, operation.instance) from exc
        self.logger.debug(
            "%s %s#%r %s",
            operation.kind,
            name,
            operation.key,
            redact_fields(operation.fields),
        )

    @staticmethod
    def _storage_fields(instance: Model, names: Optional[set]) -> dict:
        fields = {}
        for field in instance._meta.get_fields():
            name = field.require_name()
            if names is not None and name not in names:
                continue
            if names is None and field.primary_key and instance.pk is None:
                continue
            reference = instance._field_values.get(name)
            if isinstance(reference, Loaded) and reference.key is None:
                raise EntityStateError(
                    f"{type(instance).__name__}.{name} references an unsaved {reference.model.__name__}"
                )
            fields[name] = field.storage_value(instance)
        return fields

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def find_by_id(self, model: Type[M], key: Any, *, read_only: bool = False) -> Optional[M]:
        """
        Return the managed instance for ``key``, reading storage on a miss.
        A missing row is ``None``, never an error. A ``read_only`` load takes
        no snapshot, so changes to the instance are never written.
        """
        self._ensure_open()
        if key is None:
            return None
        cached = self.identity_map.lookup(model, key)
        if cached is not None:
            return cached
        if self.unit_of_work.is_key_removed(model, key):
            return None
        row = self._read("read_by_id", model, [key], lambda: self.storage.read_by_id(model, key))
        if row is None:
            return None
        return self._materialize(model, row, read_only=read_only)

    def find_all(
        self,
        model: Type[M],
        predicate: Optional[Q] = None,
        page: Optional[PageRequest] = None,
        order_by: Sequence[str] = (),
        *,
        read_only: bool = False,
        fetch: Sequence[str] = (),
    ) -> Union[List[M], Page[M]]:
        """
        Return matching entities, or a :class:`Page` when ``page`` is given.
        Rows for already managed identities yield the managed instance as is.

        ``fetch`` names references loaded in one batched read per reference
        instead of one read per entity.
        """
        if page is not None:
            instances, total = self._load_many(
                model, predicate, page.offset, page.limit, page.order_by or tuple(order_by), read_only, fetch
            )
            return Page(instances, total, page)
        instances, _ = self._load_many(model, predicate, 0, None, tuple(order_by), read_only, fetch)
        return instances

    def find_slice(
        self,
        model: Type[M],
        predicate: Optional[Q] = None,
        page: Optional[PageRequest] = None,
        *,
        read_only: bool = False,
        fetch: Sequence[str] = (),
    ) -> Slice[M]:
        """
        Return one window without counting matches; one extra row is read to
        tell whether a next window exists.
        """
        page = page or PageRequest()
        instances, _ = self._load_many(
            model,
            predicate,
            page.offset,
            page.limit + 1,
            page.order_by,
            read_only,
            fetch,
            with_total=False,
        )
        return Slice(instances[: page.limit], page, len(instances) > page.limit)

    def count(self, model: Type[Model], predicate: Optional[Q] = None) -> int:
        self._ensure_open()
        self._auto_flush()
        _, total = self._read(
            "count",
            model,
            [repr(predicate)],
            lambda: self.storage.read_many(model, predicate, 0, 0),
        )
        return total

    def bulk_update(
        self,
        model: Type[Model],
        predicate: Optional[Q],
        changes: dict,
        *,
        clear: bool = False,
    ) -> int:
        """
        Write ``changes`` to every matching row directly in storage and return
        the number of rows changed.

        Managed instances are not refreshed; pass ``clear=True`` (or call
        :meth:`clear`) before reading the affected entities again.
        """
        self._ensure_mutable()
        self._auto_flush()
        if predicate is not None and predicate.is_empty():
            predicate = None
        values = {name: self._bulk_value(model, name, value) for name, value in changes.items()}
        with time_call(
            "storage.bulk_update",
            self.logger,
            threshold_ms=self.config.slow_call_ms,
            model=model.__name__,
        ):
            affected = self.storage.bulk_update(model, predicate, values)
        self.logger.info("Bulk updated %d %s row(s)", affected, model.__name__)
        if clear:
            self.clear()
        return affected

    def query(self, model: Type[M]) -> "QuerySet":
        from ..query.queryset import QuerySet

        self._ensure_open()
        return QuerySet(model, self)

    def query_stats(self) -> List[dict]:
        return self.performance.summary()

    def reset_query_stats(self) -> None:
        self.performance.reset()

    def is_dirty(self, instance: Model) -> bool:
        self._ensure_open()
        snapshot = self.snapshots.get(instance)
        if snapshot is None:
            return self.unit_of_work.is_new(instance)
        return self.snapshots.is_dirty(instance, snapshot)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _materialize(self, model: Type[M], row: dict, *, read_only: bool = False) -> Optional[M]:
        key = row.get(model._meta.primary_key.name)
        existing = self.identity_map.lookup(model, key)
        if existing is not None:
            return existing
        if self.unit_of_work.is_key_removed(model, key):
            return None
        instance = model.from_storage(row, context=self)
        self.identity_map.register(model, key, instance)
        self.unit_of_work.register_managed(instance, key)
        if not read_only:
            self.snapshots.remember(instance)
        self.hooks.fire("after_load", instance, context=self)
        return instance

    def _load_many(
        self,
        model: Type[M],
        predicate: Optional[Q],
        offset: int,
        limit: Optional[int],
        order_by: Sequence[str],
        read_only: bool,
        fetch: Sequence[str],
        *,
        with_total: bool = True,
    ) -> Tuple[List[M], Optional[int]]:
        self._ensure_open()
        self._auto_flush()
        if predicate is not None and predicate.is_empty():
            predicate = None
        for entry in order_by:
            model._meta.get_field(entry.lstrip("-"))
        references = [self._fetchable(model, name) for name in fetch]

        rows, total = self._read(
            "read_many",
            model,
            [repr(predicate), offset, limit, tuple(order_by)],
            lambda: self.storage.read_many(
                model, predicate, offset, limit, tuple(order_by), with_total=with_total
            ),
        )
        instances = [
            instance
            for instance in (self._materialize(model, row, read_only=read_only) for row in rows)
            if instance is not None
        ]
        for field in references:
            self._fetch_references(instances, field, read_only)
        return instances, total

    @staticmethod
    def _fetchable(model: Type[Model], name: str) -> ForeignKey:
        field = model._meta.get_field(name)
        if not isinstance(field, ForeignKey):
            raise ValueError(f"'{name}' is not a reference of {model.__name__}")
        return field

    def _fetch_references(self, instances: List[Model], field: ForeignKey, read_only: bool) -> None:
        """
        Replace unloaded ``field`` references of ``instances`` with loaded ones,
        reading every missing target in a single query.
        """
        remote = field.require_remote_model()
        name = field.require_name()
        pending = [
            instance
            for instance in instances
            if isinstance(field.reference(instance), Unloaded)
        ]
        missing = []
        for instance in pending:
            key = field.reference(instance).key
            if key not in missing and self.identity_map.lookup(remote, key) is None:
                missing.append(key)
        if missing:
            predicate = Attr(remote._meta.primary_key.name).in_(missing)
            rows, _ = self._read(
                "fetch",
                remote,
                [name, len(missing)],
                lambda: self.storage.read_many(remote, predicate, with_total=False),
            )
            for row in rows:
                self._materialize(remote, row, read_only=read_only)
        for instance in pending:
            target = self.identity_map.lookup(remote, field.reference(instance).key)
            if target is not None:
                instance._field_values[name] = Loaded(target)

    @staticmethod
    def _bulk_value(model: Type[Model], name: str, value: Any) -> Any:
        field = model._meta.get_field(name)
        if field.primary_key:
            raise EntityStateError(f"Bulk updates cannot change the primary key of {model.__name__}")
        if value is None:
            if not field.nullable:
                raise ValueError(f"Field '{name}' cannot be None")
            return None
        if isinstance(field, ForeignKey):
            if isinstance(value, Model):
                if value.pk is None:
                    raise EntityStateError(f"{model.__name__}.{name} cannot reference an unsaved entity")
                return value.pk
            return value
        return field.to_python(value)

    def _read(self, label: str, model: type, params: list, call: Callable[[], Any]) -> Any:
        with time_call(
            f"storage.{label}",
            self.logger,
            threshold_ms=self.config.slow_call_ms,
            model=model.__name__,
        ) as timer:
            result = call()
        self.performance.record(f"{label}:{model.__name__}", params, timer.elapsed_ms)
        return result

    def _auto_flush(self) -> None:
        if self.config.flush_mode is not FlushMode.AUTO:
            return
        if self.state in (ContextState.FAILED, ContextState.FLUSHING):
            return
        if self.unit_of_work.has_structural_changes() or any(
            self.is_dirty(instance) for instance in self.unit_of_work.managed
        ):
            self.flush()

    def _attach(self, instance: Model) -> None:
        instance._context = self
        for field in instance._meta.references():
            reference = field.reference(instance)
            if isinstance(reference, Unloaded) and (reference.context is None or reference.context.closed):
                reference.context = self

    def _copy_state(self, source: Model, target: Model) -> None:
        for field in source._meta.get_fields():
            if field.primary_key:
                continue
            name = field.require_name()
            value = source._field_values.get(name)
            if isinstance(value, Loaded) and value.key is not None:
                value = Unloaded(value.model, value.key, self)
            elif isinstance(value, Unloaded):
                value = Unloaded(value.model, value.key, self)
            target._field_values[name] = value

    def _detach_all(self) -> None:
        for instance in self.unit_of_work.tracked():
            instance._context = None
        self.identity_map.clear()
        self.snapshots.clear()
        self.unit_of_work.clear()

    def _touch(self) -> None:
        if self.state is ContextState.FLUSHED:
            self.state = ContextState.OPEN

    def _check_owner(self) -> None:
        if self.config.enforce_single_owner and threading.get_ident() != self._owner:
            raise ConcurrentAccessError(
                "Persistence context used from a thread other than the one that created it"
            )

    def _ensure_open(self) -> None:
        if self.closed:
            raise ContextClosed("Persistence context is closed")
        self._check_owner()

    def _ensure_mutable(self) -> None:
        self._ensure_open()
        if self.state is ContextState.FAILED:
            raise ContextStateError("A previous flush failed; clear() or rollback() first")
        if self.state is ContextState.FLUSHING:
            raise ContextStateError("Cannot modify the context while flushing")
