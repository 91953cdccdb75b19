from .base import EntityStore, Scope, SCOPE_ACTIVE, SCOPE_COMMITTED, SCOPE_ABORTED
from .memory import MemoryEntityStore
from .sql import SqlEntityStore

__all__ = [
    'EntityStore', 'Scope', 'SCOPE_ACTIVE', 'SCOPE_COMMITTED', 'SCOPE_ABORTED',
    'MemoryEntityStore', 'SqlEntityStore',
]
