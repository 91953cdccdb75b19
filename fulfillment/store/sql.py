# Overview: Entity store over a relational database via SQLAlchemy ORM rows.

"""
SQL-backed entity store.

- One ORM Session per scope; commit/abort map to COMMIT/ROLLBACK.
- Checkpoints are SAVEPOINTs (Session.begin_nested()).
- Every table carries a version_id column (optimistic locking), so a scope that
  updates a row another scope committed in the meantime fails with
  StaleDataError, translated to Conflict. Lock contention reported by the
  driver (deadlocks, serialization failures, "database is locked") is also a
  Conflict; integrity errors become the matching ConstraintViolation.
- Snapshot isolation is whatever the database provides at its configured
  isolation level; for SQLite the store runs in WAL mode with explicit BEGIN so
  a stale writer is rejected instead of overwriting.

NOTE: get(..., for_update=True) emits SELECT ... FOR UPDATE; SQLite ignores it.
"""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ..errors import (
    Conflict, ConstraintViolation, DuplicateKey, InvalidEnumValue, InvalidReference,
    NonNegativeViolation,
)
from ..extensions import db
from ..models.schema import EntitySchema
from ..models.tables import ATTRIBUTE_OVERRIDES, ROW_CLASSES
from .base import EntityStore, Scope

logger = logging.getLogger(__name__)


_CONTENTION_MARKERS = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not serialize",
    "lock wait timeout",
    "lock timeout",
)

_TABLE_TO_TYPE = {row_cls.__tablename__: name for name, row_cls in ROW_CLASSES.items()}


def _constraint_error(exc: IntegrityError) -> ConstraintViolation:
    """Map a driver integrity error onto the violation taxonomy."""
    message = str(exc.orig)
    lowered = message.lower()

    # SQLite: "UNIQUE constraint failed: users.email"
    match = re.search(r"unique constraint failed: (\w+)\.(\w+)", lowered)
    if match:
        table, column = match.groups()
        return DuplicateKey(_TABLE_TO_TYPE.get(table, table), column, message)
    # PostgreSQL: 'duplicate key value ... DETAIL: Key (email)=(...) already exists.'
    if "duplicate key" in lowered or "unique" in lowered:
        match = re.search(r"key \((\w+)\)", lowered)
        return DuplicateKey("unknown", match.group(1) if match else None, message)
    if "foreign key" in lowered:
        return InvalidReference("unknown", None, message)
    if "check constraint" in lowered:
        match = re.search(r"ck_(\w+?)_(status|reason)\b", lowered)
        if match:
            return InvalidEnumValue(_TABLE_TO_TYPE.get(match.group(1), match.group(1)), match.group(2), message)
        match = re.search(r"ck_(\w+?)_(unit_price|amount|quantity|on_hand)\b", lowered)
        if match:
            return NonNegativeViolation(_TABLE_TO_TYPE.get(match.group(1), match.group(1)), match.group(2), message)
    return ConstraintViolation("unknown", None, message)


@contextmanager
def translate_errors():
    """Re-raise SQLAlchemy/driver failures as engine errors."""
    try:
        yield
    except StaleDataError as exc:
        raise Conflict(f"Concurrent update detected: {exc}") from exc
    except IntegrityError as exc:
        raise _constraint_error(exc) from exc
    except OperationalError as exc:
        message = str(exc.orig).lower()
        if any(marker in message for marker in _CONTENTION_MARKERS):
            raise Conflict(f"Write contention: {exc.orig}") from exc
        raise


def configure_sqlite(engine: Engine) -> None:
    """
    Make pysqlite honour SAVEPOINT and explicit transaction boundaries.

    pysqlite's implicit BEGIN handling breaks savepoints, so it is disabled and
    BEGIN is emitted by SQLAlchemy instead. Foreign keys are off by default in
    SQLite and are switched on per connection.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


class SqlScope(Scope):
    def __init__(self, store, scope_id, deadline, session: Session):
        super().__init__(store, scope_id, deadline)
        self.session = session
        self.savepoints: dict[int, Any] = {}


class SqlEntityStore(EntityStore):
    """Entity store persisted through the Flask-SQLAlchemy row classes."""

    def __init__(
        self,
        engine: Engine,
        schemas=None,
        *,
        clock: Callable[[], float] = time.monotonic,
        default_timeout: Optional[float] = None,
    ):
        super().__init__(schemas, clock=clock, default_timeout=default_timeout)
        self.engine = engine
        if engine.dialect.name == "sqlite":
            configure_sqlite(engine)
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False, autoflush=True)

    def create_schema(self) -> None:
        db.metadata.create_all(self.engine)

    def drop_schema(self) -> None:
        db.metadata.drop_all(self.engine)

    # =========================================================================
    # SCOPE LIFECYCLE
    # =========================================================================

    def _new_scope(self, scope_id: int, deadline: Optional[float]) -> SqlScope:
        session = self._sessions()
        session.begin()
        return SqlScope(self, scope_id, deadline, session)

    def _commit(self, scope: SqlScope) -> None:
        with translate_errors():
            scope.session.commit()
        scope.session.close()

    def _abort(self, scope: SqlScope) -> None:
        try:
            scope.session.rollback()
        finally:
            scope.session.close()
            scope.savepoints.clear()

    def _checkpoint(self, scope: SqlScope, checkpoint_id: int) -> None:
        with translate_errors():
            scope.savepoints[checkpoint_id] = scope.session.begin_nested()

    def _rollback_to(self, scope: SqlScope, checkpoint_id: int, discarded: list[int]) -> None:
        for checkpoint in discarded:
            scope.savepoints.pop(checkpoint, None)
        with translate_errors():
            scope.savepoints[checkpoint_id].rollback()
            # the savepoint is consumed by ROLLBACK TO; re-open it so the
            # checkpoint stays usable
            scope.savepoints[checkpoint_id] = scope.session.begin_nested()

    def _release(self, scope: SqlScope, checkpoint_id: int, discarded: list[int]) -> None:
        for checkpoint in discarded:
            scope.savepoints.pop(checkpoint, None)
        savepoint = scope.savepoints.pop(checkpoint_id)
        with translate_errors():
            savepoint.commit()

    # =========================================================================
    # DATA OPERATIONS
    # =========================================================================

    def _read(self, scope: SqlScope, schema: EntitySchema, key, for_update: bool):
        row_cls = ROW_CLASSES[schema.name]
        with translate_errors():
            row = scope.session.get(row_cls, key, with_for_update=True if for_update else None)
        return None if row is None else self._to_entity(schema, row)

    def _write(self, scope: SqlScope, schema: EntitySchema, key, entity) -> None:
        row_cls = ROW_CLASSES[schema.name]
        values = self._to_values(schema, entity)
        with translate_errors():
            row = scope.session.get(row_cls, key)
            if row is None:
                scope.session.add(row_cls(**values))
            else:
                for attr, value in values.items():
                    if getattr(row, attr) != value:
                        setattr(row, attr, value)
            scope.session.flush()

    def _remove(self, scope: SqlScope, schema: EntitySchema, key) -> None:
        row_cls = ROW_CLASSES[schema.name]
        with translate_errors():
            row = scope.session.get(row_cls, key)
            if row is not None:
                scope.session.delete(row)
                scope.session.flush()

    def _scan(self, scope: SqlScope, schema: EntitySchema, field: str, value, for_update: bool) -> Iterator[Any]:
        row_cls = ROW_CLASSES[schema.name]
        column = getattr(row_cls, ATTRIBUTE_OVERRIDES.get(schema.name, {}).get(field, field))
        criterion = column.is_(None) if value is None else column == value
        statement = select(row_cls).where(criterion)
        if for_update:
            statement = statement.with_for_update().execution_options(populate_existing=True)
        with translate_errors():
            rows = scope.session.execute(statement).scalars().all()
        return (self._to_entity(schema, row) for row in rows)

    # =========================================================================
    # ROW <-> RECORD
    # =========================================================================

    @staticmethod
    def _to_entity(schema: EntitySchema, row):
        overrides = ATTRIBUTE_OVERRIDES.get(schema.name, {})
        values = {name: getattr(row, overrides.get(name, name)) for name in schema.field_names}
        return schema.entity_cls(**values)

    @staticmethod
    def _to_values(schema: EntitySchema, entity) -> dict[str, Any]:
        overrides = ATTRIBUTE_OVERRIDES.get(schema.name, {})
        return {overrides.get(name, name): getattr(entity, name) for name in schema.field_names}
