# Overview: Flask application factory wiring the entity store and services.

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flask import Flask, current_app

from .config import Config
from .extensions import db
from .services.catalog_service import CatalogService
from .services.concurrency import KeyedLockRegistry
from .services.order_service import OrderCoordinator
from .store import EntityStore, MemoryEntityStore, SqlEntityStore

EXTENSION_KEY = "fulfillment"

BACKEND_MEMORY = "memory"
BACKEND_SQL = "sql"


@dataclass
class Fulfillment:
    """Wired engine: one store, one lock registry, the services on top."""
    store: EntityStore
    orders: OrderCoordinator
    catalog: CatalogService
    lock_registry: Optional[KeyedLockRegistry] = None


def build_fulfillment(
    store: EntityStore,
    *,
    attempts: int = 3,
    backoff_base: float = 0.05,
    scope_timeout: Optional[float] = Config.FULFILLMENT_SCOPE_TIMEOUT,
    force_locks: bool = False,
) -> Fulfillment:
    """Create both services over `store`, sharing a single lock registry."""
    lock_registry = None
    if force_locks or not store.supports_conflict_detection:
        lock_registry = KeyedLockRegistry()
    options = dict(
        attempts=attempts,
        backoff_base=backoff_base,
        scope_timeout=scope_timeout,
        lock_registry=lock_registry,
    )
    return Fulfillment(
        store=store,
        orders=OrderCoordinator(store, **options),
        catalog=CatalogService(store, **options),
        lock_registry=lock_registry,
    )


def _configure_logging(app: Flask) -> None:
    level = logging.getLevelName(str(app.config["FULFILLMENT_LOG_LEVEL"]).upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown FULFILLMENT_LOG_LEVEL: {app.config['FULFILLMENT_LOG_LEVEL']}")
    logger = logging.getLogger(__name__)
    logger.setLevel(level)
    if not logging.getLogger().handlers and not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)


def _build_store(app: Flask) -> EntityStore:
    backend = app.config["FULFILLMENT_STORE_BACKEND"]
    scope_timeout = app.config["FULFILLMENT_SCOPE_TIMEOUT"]
    if backend == BACKEND_MEMORY:
        return MemoryEntityStore(default_timeout=scope_timeout)
    if backend == BACKEND_SQL:
        with app.app_context():
            store = SqlEntityStore(db.engine, default_timeout=scope_timeout)
            store.create_schema()
        return store
    raise ValueError(f"Unknown FULFILLMENT_STORE_BACKEND: {backend!r} (expected memory or sql)")


def create_app(overrides: Optional[dict] = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        # wait for the SQLite write lock up to the scope deadline
        engine_options = app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {})
        engine_options.setdefault("connect_args", {}).setdefault(
            "timeout", app.config["FULFILLMENT_SCOPE_TIMEOUT"]
        )

    _configure_logging(app)

    # Initialize extensions
    db.init_app(app)

    store = _build_store(app)
    app.extensions[EXTENSION_KEY] = build_fulfillment(
        store,
        attempts=app.config["FULFILLMENT_RETRY_ATTEMPTS"],
        backoff_base=app.config["FULFILLMENT_RETRY_BACKOFF"],
        scope_timeout=app.config["FULFILLMENT_SCOPE_TIMEOUT"],
        force_locks=app.config["FULFILLMENT_FORCE_PRODUCT_LOCKS"],
    )

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def get_engine(app: Optional[Flask] = None) -> Fulfillment:
    """The Fulfillment wired into `app` (or the current app)."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
