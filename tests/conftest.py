"""
Pytest fixtures for the fulfillment engine tests.

Provides a fresh in-memory store per test, the wired services on top of it,
a small seeded catalog and a Flask app backed by a temporary SQLite file.
"""

from dataclasses import dataclass
from decimal import Decimal

import pytest

from fulfillment import build_fulfillment, create_app, get_engine
from fulfillment.extensions import db
from fulfillment.store import MemoryEntityStore


# =============================================================================
# STORE + SERVICES
# =============================================================================

@pytest.fixture
def store():
    return MemoryEntityStore()


@pytest.fixture
def engine(store):
    # no sleeping between retries in tests
    return build_fulfillment(store, backoff_base=0)


@pytest.fixture
def catalog(engine):
    return engine.catalog


@pytest.fixture
def orders(engine):
    return engine.orders


# =============================================================================
# SEEDED CATALOG
# =============================================================================

@dataclass
class Seed:
    user_id: str
    category_id: str
    product_a: str
    product_b: str
    product_c: str


def seed_catalog(catalog) -> Seed:
    """
    product_a: 10.00, 5 on hand
    product_b:  2.50, 10 on hand
    product_c: 20.00, 1 on hand
    """
    user_id = catalog.register_user("ada@example.com", "Ada Lovelace")
    category_id = catalog.create_category("Hardware")
    product_a = catalog.create_product(category_id, "SKU-A", "Widget", Decimal("10.00"), initial_stock=5)
    product_b = catalog.create_product(category_id, "SKU-B", "Bolt", Decimal("2.50"), initial_stock=10)
    product_c = catalog.create_product(category_id, "SKU-C", "Gear", Decimal("20.00"), initial_stock=1)
    return Seed(user_id, category_id, product_a, product_b, product_c)


@pytest.fixture
def seed(catalog):
    return seed_catalog(catalog)


# =============================================================================
# FLASK APP (SQL BACKEND)
# =============================================================================

@pytest.fixture
def sql_app(tmp_path):
    """Flask app on a temporary SQLite file; each scope gets its own connection."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'fulfillment-test.sqlite3'}",
        "FULFILLMENT_STORE_BACKEND": "sql",
        "FULFILLMENT_RETRY_BACKOFF": 0,
    })
    yield app
    with app.app_context():
        db.engine.dispose()


@pytest.fixture
def sql_engine(sql_app):
    return get_engine(sql_app)
