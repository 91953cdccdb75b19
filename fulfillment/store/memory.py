# Overview: Reference in-memory entity store with snapshot-isolated scopes.

"""
Multi-version in-memory store.

Every committed write appends (commit_seq, entity) to the key's version list;
a tombstone is stored as (commit_seq, None). A scope reads the newest version
whose commit_seq is <= the sequence number current when the scope began, so
concurrent scopes never see each other's uncommitted or later-committed
writes.

Commit (under the store mutex):
1. conflict: any key this scope wrote, or read with a locking read or scan,
   that gained a newer version since the scope saw it -> Conflict
2. uniqueness / references against the latest committed state merged with the
   scope's own writes -> DuplicateKey / InvalidReference
3. append all writes with the next commit_seq, then prune versions no active
   scope can still see
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterator, Optional

from ..errors import Conflict, DuplicateKey, InvalidReference, Timeout
from ..models.schema import EntitySchema, dependents_of
from .base import EntityStore, Scope

logger = logging.getLogger(__name__)

_ABSENT = object()
_TOMBSTONE = object()


class MemoryScope(Scope):
    def __init__(self, store, scope_id, deadline, snapshot_seq: int):
        super().__init__(store, scope_id, deadline)
        self.snapshot_seq = snapshot_seq
        self.writes: dict[tuple[str, Any], Any] = {}
        self.journal: list[tuple[tuple[str, Any], Any]] = []
        self.marks: dict[int, int] = {}
        self.read_seqs: dict[tuple[str, Any], int] = {}


class MemoryEntityStore(EntityStore):
    """
    Snapshot-isolated reference store.

    detect_conflicts=False turns off the commit-time write-write check, which
    models a backend without native conflict detection (last writer wins).
    """

    def __init__(
        self,
        schemas=None,
        *,
        detect_conflicts: bool = True,
        clock: Callable[[], float] = time.monotonic,
        default_timeout: Optional[float] = None,
    ):
        super().__init__(schemas, clock=clock, default_timeout=default_timeout)
        self.supports_conflict_detection = detect_conflicts
        self._mutex = threading.Lock()
        self._seq = 0
        self._tables: dict[str, dict[Any, list[tuple[int, Any]]]] = {name: {} for name in self.schemas}
        self._indexes: dict[str, dict[str, dict[Any, set]]] = {
            name: {field: {} for field in schema.index_names}
            for name, schema in self.schemas.items()
        }
        self._active: dict[int, int] = {}

    @property
    def commit_seq(self) -> int:
        return self._seq

    # =========================================================================
    # SCOPE LIFECYCLE
    # =========================================================================

    def _new_scope(self, scope_id: int, deadline: Optional[float]) -> MemoryScope:
        with self._mutex:
            snapshot = self._seq
            self._active[scope_id] = snapshot
        return MemoryScope(self, scope_id, deadline, snapshot)

    def _commit(self, scope: MemoryScope) -> None:
        remaining = scope.time_left()
        if remaining is None:
            acquired = self._mutex.acquire()
        else:
            acquired = self._mutex.acquire(timeout=max(remaining, 0))
        if not acquired:
            raise Timeout(f"Scope {scope.id} could not acquire the commit lock before its deadline")
        try:
            if scope.expired():
                raise Timeout(f"Scope {scope.id} passed its deadline before commit")
            if self.supports_conflict_detection:
                self._check_conflicts(scope)
            self._check_constraints(scope)

            seq = self._seq + 1
            for (name, key), entity in scope.writes.items():
                value = None if entity is _TOMBSTONE else entity
                self._tables[name].setdefault(key, []).append((seq, value))
                if value is not None:
                    self._index_entity(name, key, value)
            self._seq = seq
            self._active.pop(scope.id, None)
            self._vacuum(scope.writes)
        finally:
            self._mutex.release()
        logger.debug("scope %s committed %d writes at seq %d", scope.id, len(scope.writes), seq)

    def _abort(self, scope: MemoryScope) -> None:
        with self._mutex:
            self._active.pop(scope.id, None)
        scope.writes.clear()
        scope.journal.clear()
        scope.marks.clear()

    def _checkpoint(self, scope: MemoryScope, checkpoint_id: int) -> None:
        scope.marks[checkpoint_id] = len(scope.journal)

    def _rollback_to(self, scope: MemoryScope, checkpoint_id: int, discarded: list[int]) -> None:
        mark = scope.marks[checkpoint_id]
        while len(scope.journal) > mark:
            slot, previous = scope.journal.pop()
            if previous is _ABSENT:
                scope.writes.pop(slot, None)
            else:
                scope.writes[slot] = previous
        for checkpoint in discarded:
            scope.marks.pop(checkpoint, None)

    def _release(self, scope: MemoryScope, checkpoint_id: int, discarded: list[int]) -> None:
        scope.marks.pop(checkpoint_id, None)
        for checkpoint in discarded:
            scope.marks.pop(checkpoint, None)

    # =========================================================================
    # DATA OPERATIONS
    # =========================================================================

    def _read(self, scope: MemoryScope, schema: EntitySchema, key, for_update: bool):
        buffered = scope.writes.get((schema.name, key), _ABSENT)
        if buffered is not _ABSENT:
            return None if buffered is _TOMBSTONE else buffered
        with self._mutex:
            versions = self._tables[schema.name].get(key)
            if for_update and versions:
                # locking read: newest committed version, as SELECT ... FOR UPDATE
                seq, entity = versions[-1]
                scope.read_seqs[(schema.name, key)] = seq
                return entity
            return self._visible(versions, scope.snapshot_seq)

    def _write(self, scope: MemoryScope, schema: EntitySchema, key, entity) -> None:
        self._buffer(scope, (schema.name, key), entity)

    def _remove(self, scope: MemoryScope, schema: EntitySchema, key) -> None:
        self._buffer(scope, (schema.name, key), _TOMBSTONE)

    def _scan(self, scope: MemoryScope, schema: EntitySchema, field: str, value, for_update: bool) -> Iterator[Any]:
        name = schema.name
        with self._mutex:
            keys = set(self._indexes[name][field].get(value, ()))
            if for_update:
                # locking scan: newest committed versions, each recorded like a locking read
                committed = []
                for key in keys:
                    versions = self._tables[name].get(key)
                    if versions:
                        seq, entity = versions[-1]
                        scope.read_seqs[(name, key)] = seq
                        committed.append((key, entity))
            else:
                committed = [
                    (key, self._visible(self._tables[name].get(key), scope.snapshot_seq)) for key in keys
                ]
        buffered = [(key, entity) for (type_name, key), entity in scope.writes.items() if type_name == name]
        return self._merge_scan(committed, buffered, field, value)

    @staticmethod
    def _merge_scan(committed, buffered, field, value) -> Iterator[Any]:
        overridden = {key for key, _ in buffered}
        for key, entity in committed:
            if key in overridden or entity is None:
                continue
            if getattr(entity, field) == value:
                yield entity
        for key, entity in buffered:
            if entity is not _TOMBSTONE and getattr(entity, field) == value:
                yield entity

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @staticmethod
    def _visible(versions, snapshot_seq: int):
        if not versions:
            return None
        for seq, entity in reversed(versions):
            if seq <= snapshot_seq:
                return entity
        return None

    @staticmethod
    def _buffer(scope: MemoryScope, slot, entity) -> None:
        scope.journal.append((slot, scope.writes.get(slot, _ABSENT)))
        scope.writes[slot] = entity

    def _index_entity(self, name: str, key, entity) -> None:
        for field, index in self._indexes[name].items():
            index.setdefault(getattr(entity, field), set()).add(key)

    def _latest(self, scope: MemoryScope, name: str, key):
        """Latest committed state overlaid with the scope's own writes (mutex held)."""
        buffered = scope.writes.get((name, key), _ABSENT)
        if buffered is not _ABSENT:
            return None if buffered is _TOMBSTONE else buffered
        versions = self._tables[name].get(key)
        return versions[-1][1] if versions else None

    def _candidate_keys(self, scope: MemoryScope, name: str, field: str, value) -> set:
        keys = set(self._indexes[name][field].get(value, ()))
        for (type_name, key), entity in scope.writes.items():
            if type_name == name and entity is not _TOMBSTONE and getattr(entity, field) == value:
                keys.add(key)
        return keys

    def _check_conflicts(self, scope: MemoryScope) -> None:
        for slot in scope.writes.keys() | scope.read_seqs.keys():
            name, key = slot
            versions = self._tables[name].get(key)
            if slot in scope.read_seqs:
                seen = scope.read_seqs[slot]
            else:
                seen = scope.snapshot_seq
            if versions and versions[-1][0] > seen:
                raise Conflict(f"{name} {key!r} was modified by a concurrent scope")

    def _check_constraints(self, scope: MemoryScope) -> None:
        for (name, key), entity in scope.writes.items():
            schema = self.schemas[name]
            if entity is _TOMBSTONE:
                for dep_schema, ref in dependents_of(name, self.schemas):
                    for dep_key in self._candidate_keys(scope, dep_schema.name, ref.field, key):
                        dependent = self._latest(scope, dep_schema.name, dep_key)
                        if dependent is not None and getattr(dependent, ref.field) == key:
                            raise InvalidReference(
                                dep_schema.name, ref.field, f"{name} {key!r} is still referenced"
                            )
                continue

            for field in schema.unique:
                value = getattr(entity, field)
                if value is None:
                    continue
                for other_key in self._candidate_keys(scope, name, field, value):
                    if other_key == key:
                        continue
                    other = self._latest(scope, name, other_key)
                    if other is not None and getattr(other, field) == value:
                        raise DuplicateKey(name, field, f"{value!r} already exists")

            for ref in schema.references:
                target_key = getattr(entity, ref.field)
                if target_key is None:
                    continue
                if self._latest(scope, ref.target, target_key) is None:
                    raise InvalidReference(name, ref.field, f"{ref.target} {target_key!r} does not exist")

    def _vacuum(self, slots) -> None:
        """Drop versions of the just-written keys that no open scope can see."""
        horizon = min(self._active.values(), default=self._seq)
        for name, key in slots:
            versions = self._tables[name].get(key)
            if not versions or (len(versions) == 1 and versions[0][1] is not None):
                continue
            keep_from = 0
            for position, (seq, _) in enumerate(versions):
                if seq <= horizon:
                    keep_from = position
            del versions[:keep_from]
            if len(versions) == 1 and versions[0][1] is None:
                del self._tables[name][key]
