# Overview: Entity Store contract; scope lifecycle, checkpoints and referential delete actions.

"""
Entity Store Invariants (authoritative)

- Every read/write/scan happens inside an open Scope; anything else raises
  NoActiveTransaction.
- Writes are buffered in the scope and become visible to other scopes only on
  commit. Abort discards them; rollback_to_checkpoint discards the writes made
  after that checkpoint and keeps the checkpoint itself usable.
- Commit re-checks uniqueness and references against the latest committed
  state and detects write-write conflicts (Conflict). A failed commit leaves
  the scope aborted and the store unchanged.
- delete() applies the schema's referential actions inside the scope and is
  atomic: on failure the scope is exactly as it was before the call.

Backends implement the underscore primitives; the public surface and the
bookkeeping live here.
"""

from __future__ import annotations

import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Callable, Iterator, Optional

from ..errors import FulfillmentError, InvalidReference, NoActiveTransaction, NotFound, Timeout
from ..models.schema import CASCADE, RESTRICT, SCHEMAS, EntitySchema, dependents_of

logger = logging.getLogger(__name__)


SCOPE_ACTIVE = "active"
SCOPE_COMMITTED = "committed"
SCOPE_ABORTED = "aborted"


class Scope:
    """
    Handle for one unit of work.

    Carries the deadline, the checkpoint stack and any exclusive locks taken
    on its behalf; locks are released when the scope commits or aborts.
    The data methods are shorthands for the owning store's methods.
    """

    def __init__(self, store: "EntityStore", scope_id: int, deadline: Optional[float]):
        self.store = store
        self.id = scope_id
        self.deadline = deadline
        self.state = SCOPE_ACTIVE
        self.lock_registry = None
        self.locked_keys: set = set()
        self._checkpoints: list[int] = []
        self._checkpoint_ids = itertools.count(1)
        self._held: list[Callable[[], None]] = []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id} state={self.state}>"

    @property
    def active(self) -> bool:
        return self.state == SCOPE_ACTIVE

    def time_left(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - self.store.clock()

    def expired(self) -> bool:
        remaining = self.time_left()
        return remaining is not None and remaining <= 0

    def hold(self, release: Callable[[], None]) -> None:
        """Register a release callback that runs when the scope finishes."""
        self._held.append(release)

    def _finish(self, state: str) -> None:
        self.state = state
        while self._held:
            self._held.pop()()

    # Shorthands -------------------------------------------------------------

    def get(self, entity_type: str, key, *, for_update: bool = False):
        return self.store.get(self, entity_type, key, for_update=for_update)

    def find(self, entity_type: str, key, *, for_update: bool = False):
        return self.store.find(self, entity_type, key, for_update=for_update)

    def put(self, entity_type: str, key, entity) -> None:
        self.store.put(self, entity_type, key, entity)

    def insert(self, entity_type: str, entity) -> None:
        self.store.put(self, entity_type, self.store.schema(entity_type).key_of(entity), entity)

    def delete(self, entity_type: str, key) -> None:
        self.store.delete(self, entity_type, key)

    def scan_by_index(self, entity_type: str, index_name: str, value, *, for_update: bool = False) -> Iterator[Any]:
        return self.store.scan_by_index(self, entity_type, index_name, value, for_update=for_update)

    def checkpoint(self) -> int:
        return self.store.checkpoint(self)

    def rollback_to_checkpoint(self, checkpoint_id: int) -> None:
        self.store.rollback_to_checkpoint(self, checkpoint_id)

    def release_checkpoint(self, checkpoint_id: int) -> None:
        self.store.release_checkpoint(self, checkpoint_id)


class EntityStore(ABC):
    """Transactional keyed storage for the entity set described by `schemas`."""

    # False means concurrent writers to the same key are not detected at
    # commit; callers must serialize read-modify-write with exclusive locks.
    supports_conflict_detection = True

    def __init__(
        self,
        schemas: Optional[dict[str, EntitySchema]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        default_timeout: Optional[float] = None,
    ):
        self.schemas = schemas or SCHEMAS
        self.clock = clock
        self.default_timeout = default_timeout
        self._scope_ids = itertools.count(1)

    def schema(self, entity_type: str) -> EntitySchema:
        try:
            return self.schemas[entity_type]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity_type}") from None

    # =========================================================================
    # SCOPE LIFECYCLE
    # =========================================================================

    def begin(self, timeout: Optional[float] = None) -> Scope:
        if timeout is None:
            timeout = self.default_timeout
        deadline = None if timeout is None else self.clock() + timeout
        scope = self._new_scope(next(self._scope_ids), deadline)
        logger.debug("begin scope %s", scope.id)
        return scope

    def commit(self, scope: Scope) -> None:
        self._require_active(scope)
        try:
            if scope.expired():
                raise Timeout(f"Scope {scope.id} passed its deadline before commit")
            self._commit(scope)
        except BaseException:
            if scope.active:
                self._abort(scope)
                scope._finish(SCOPE_ABORTED)
            logger.debug("commit of scope %s failed; aborted", scope.id)
            raise
        scope._finish(SCOPE_COMMITTED)
        logger.debug("committed scope %s", scope.id)

    def abort(self, scope: Scope) -> None:
        self._require_active(scope)
        try:
            self._abort(scope)
        finally:
            scope._finish(SCOPE_ABORTED)
        logger.debug("aborted scope %s", scope.id)

    def checkpoint(self, scope: Scope) -> int:
        self._require_active(scope)
        checkpoint_id = next(scope._checkpoint_ids)
        self._checkpoint(scope, checkpoint_id)
        scope._checkpoints.append(checkpoint_id)
        return checkpoint_id

    def rollback_to_checkpoint(self, scope: Scope, checkpoint_id: int) -> None:
        self._require_active(scope)
        position = self._checkpoint_position(scope, checkpoint_id)
        discarded = scope._checkpoints[position + 1:]
        del scope._checkpoints[position + 1:]
        self._rollback_to(scope, checkpoint_id, discarded)

    def release_checkpoint(self, scope: Scope, checkpoint_id: int) -> None:
        """Forget a checkpoint (and any taken after it) while keeping its writes."""
        self._require_active(scope)
        position = self._checkpoint_position(scope, checkpoint_id)
        discarded = scope._checkpoints[position + 1:]
        del scope._checkpoints[position:]
        self._release(scope, checkpoint_id, discarded)

    # =========================================================================
    # DATA OPERATIONS
    # =========================================================================

    def get(self, scope: Scope, entity_type: str, key, *, for_update: bool = False):
        entity = self.find(scope, entity_type, key, for_update=for_update)
        if entity is None:
            raise NotFound(entity_type, key)
        return entity

    def find(self, scope: Scope, entity_type: str, key, *, for_update: bool = False):
        self._require_active(scope)
        return self._read(scope, self.schema(entity_type), key, for_update)

    def put(self, scope: Scope, entity_type: str, key, entity) -> None:
        self._require_active(scope)
        schema = self.schema(entity_type)
        if not isinstance(entity, schema.entity_cls):
            raise TypeError(f"Expected {schema.entity_cls.__name__} for {entity_type}, got {type(entity).__name__}")
        if schema.key_of(entity) != key:
            raise ValueError(f"Key {key!r} does not match {entity_type} key {schema.key_of(entity)!r}")
        self._write(scope, schema, key, entity)

    def delete(self, scope: Scope, entity_type: str, key) -> None:
        self._require_active(scope)
        schema = self.schema(entity_type)
        if self._read(scope, schema, key, False) is None:
            raise NotFound(entity_type, key)

        checkpoint_id = self.checkpoint(scope)
        try:
            self._delete_with_dependents(scope, schema, key)
        except FulfillmentError:
            self.rollback_to_checkpoint(scope, checkpoint_id)
            self.release_checkpoint(scope, checkpoint_id)
            raise
        self.release_checkpoint(scope, checkpoint_id)

    def scan_by_index(
        self, scope: Scope, entity_type: str, index_name: str, value, *, for_update: bool = False
    ) -> Iterator[Any]:
        self._require_active(scope)
        schema = self.schema(entity_type)
        if index_name not in schema.index_names:
            raise ValueError(f"{entity_type} has no index on {index_name!r}")
        return self._scan(scope, schema, index_name, value, for_update)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require_active(self, scope: Optional[Scope]) -> None:
        if scope is None or not isinstance(scope, Scope):
            raise NoActiveTransaction("Entity store used outside a transaction scope")
        if scope.store is not self:
            raise NoActiveTransaction(f"Scope {scope.id} belongs to a different store")
        if not scope.active:
            raise NoActiveTransaction(f"Scope {scope.id} is already {scope.state}")

    @staticmethod
    def _checkpoint_position(scope: Scope, checkpoint_id: int) -> int:
        try:
            return scope._checkpoints.index(checkpoint_id)
        except ValueError:
            raise ValueError(f"Unknown checkpoint {checkpoint_id} for scope {scope.id}") from None

    def _delete_with_dependents(self, scope: Scope, schema: EntitySchema, key) -> None:
        pending = []
        for dep_schema, ref in dependents_of(schema.name, self.schemas):
            rows = list(self._scan(scope, dep_schema, ref.field, key, False))
            if not rows:
                continue
            if ref.on_delete == RESTRICT:
                raise InvalidReference(
                    dep_schema.name, ref.field, f"{schema.name} {key!r} is still referenced"
                )
            pending.append((dep_schema, ref, rows))

        for dep_schema, ref, rows in pending:
            for row in rows:
                dep_key = dep_schema.key_of(row)
                if ref.on_delete == CASCADE:
                    if self._read(scope, dep_schema, dep_key, False) is not None:
                        self._delete_with_dependents(scope, dep_schema, dep_key)
                else:
                    self._write(scope, dep_schema, dep_key, replace(row, **{ref.field: None}))

        self._remove(scope, schema, key)

    # Backend primitives -------------------------------------------------------

    @abstractmethod
    def _new_scope(self, scope_id: int, deadline: Optional[float]) -> Scope: ...

    @abstractmethod
    def _commit(self, scope: Scope) -> None: ...

    @abstractmethod
    def _abort(self, scope: Scope) -> None: ...

    @abstractmethod
    def _checkpoint(self, scope: Scope, checkpoint_id: int) -> None: ...

    @abstractmethod
    def _rollback_to(self, scope: Scope, checkpoint_id: int, discarded: list[int]) -> None: ...

    @abstractmethod
    def _release(self, scope: Scope, checkpoint_id: int, discarded: list[int]) -> None: ...

    @abstractmethod
    def _read(self, scope: Scope, schema: EntitySchema, key, for_update: bool): ...

    @abstractmethod
    def _write(self, scope: Scope, schema: EntitySchema, key, entity) -> None: ...

    @abstractmethod
    def _remove(self, scope: Scope, schema: EntitySchema, key) -> None: ...

    @abstractmethod
    def _scan(self, scope: Scope, schema: EntitySchema, field: str, value, for_update: bool) -> Iterator[Any]: ...
