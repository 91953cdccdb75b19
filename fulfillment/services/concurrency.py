# Overview: Scope runner, bounded conflict retry and per-key exclusive locks.

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Callable, Optional

from ..errors import Conflict, Timeout
from ..store.base import EntityStore, Scope
from ..time_utils import utcnow

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """
    Exclusive locks keyed by an arbitrary hashable (e.g. ("inventory", product_id)).

    Used when the store cannot detect write-write conflicts itself; a lock is
    held from the read of a row until the scope that read it commits or aborts.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[object, threading.Lock] = defaultdict(threading.Lock)

    def _lock_for(self, key) -> threading.Lock:
        with self._guard:
            return self._locks[key]

    def acquire(self, key, timeout: Optional[float] = None) -> Callable[[], None]:
        """
        Acquire the lock for `key` and return its release callable.

        Raises:
            Timeout: If the lock is not free within `timeout` seconds
        """
        lock = self._lock_for(key)
        if timeout is None:
            acquired = lock.acquire()
        else:
            acquired = lock.acquire(timeout=max(timeout, 0))
        if not acquired:
            raise Timeout(f"Timed out waiting for exclusive lock on {key!r}")
        return lock.release


def lock_for_update(scope: Scope, key) -> None:
    """
    Take the exclusive lock for `key` for the rest of the scope.

    No-op when the scope has no lock registry (the store detects conflicts at
    commit) or when this scope already holds the lock.
    """
    registry = scope.lock_registry
    if registry is None:
        return
    if key in scope.locked_keys:
        return
    release = registry.acquire(key, timeout=scope.time_left())
    scope.locked_keys.add(key)
    scope.hold(release)


def get_for_update(scope: Scope, entity_type: str, key):
    """
    Locking read: take the key's exclusive lock (if the scope uses locks) and
    return the newest committed version.

    Lock order across the codebase: order, then its payment or shipment, then
    inventory rows sorted by product id.
    """
    lock_for_update(scope, (entity_type, key))
    return scope.get(entity_type, key, for_update=True)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, operation: str = "operation"):
    """
    Execute a scoped operation with retry on concurrency-related failures.

    Retries on Conflict (concurrent write detected at commit) and Timeout.
    Every attempt re-runs `func` from scratch, so decisions are re-made against
    freshly read state.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (Conflict, Timeout) as exc:
            last_exc = exc
            if attempt >= attempts - 1:
                logger.warning("%s gave up after %d attempts: %s", operation, attempts, exc)
                raise
            delay = backoff_base * (2 ** attempt)
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.3fs",
                operation, attempt + 1, attempts, type(exc).__name__, delay,
            )
            time.sleep(delay)
    if last_exc:
        raise last_exc


@contextmanager
def transaction_scope(store: EntityStore, *, timeout: Optional[float] = None, lock_registry=None):
    """Open a scope, commit it on success and abort it on any failure."""
    scope = store.begin(timeout=timeout)
    scope.lock_registry = lock_registry
    try:
        yield scope
    except BaseException:
        if scope.active:
            store.abort(scope)
        raise
    store.commit(scope)


class TransactionalService:
    """
    Base for services whose public operations each run as one atomic scope.

    Subclasses call self._execute(name, fn) where fn(scope) does the work.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        attempts: int = 3,
        backoff_base: float = 0.05,
        scope_timeout: Optional[float] = None,
        lock_registry: Optional[KeyedLockRegistry] = None,
        force_locks: bool = False,
        clock=None,
    ):
        self.store = store
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.scope_timeout = scope_timeout
        self.clock = clock or utcnow
        if lock_registry is None and (force_locks or not store.supports_conflict_detection):
            lock_registry = KeyedLockRegistry()
        self.lock_registry = lock_registry

    def _execute(self, operation: str, fn):
        def _attempt():
            with transaction_scope(
                self.store, timeout=self.scope_timeout, lock_registry=self.lock_registry
            ) as scope:
                return fn(scope)

        return run_with_retry(
            _attempt, attempts=self.attempts, backoff_base=self.backoff_base, operation=operation
        )

    def _read(self, fn):
        """Run a read-only function in a scope that is always aborted."""
        scope = self.store.begin(timeout=self.scope_timeout)
        try:
            return fn(scope)
        finally:
            if scope.active:
                self.store.abort(scope)
