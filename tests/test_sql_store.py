"""
SQL-backed store tests (SQLite file database).

The main order flow must behave exactly as it does on the memory store.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from fulfillment.errors import (
    AmountMismatch, Conflict, DuplicateKey, InsufficientStock, InvalidReference, InvalidTransition,
)
from fulfillment.models import CATEGORY, INVENTORY, INVENTORY_MOVEMENT, ORDER, PAYMENT, USER, Category, User
from fulfillment.services.order_service import OrderRequest
from fulfillment.time_utils import utcnow
from tests.conftest import seed_catalog


@pytest.fixture
def seeded(sql_engine):
    return seed_catalog(sql_engine.catalog)


def line(product_id, quantity):
    return {"product_id": product_id, "quantity": quantity}


def test_sql_app_wires_sql_store(sql_engine):
    assert type(sql_engine.store).__name__ == "SqlEntityStore"
    assert sql_engine.store.supports_conflict_detection
    assert sql_engine.lock_registry is None


def test_full_order_flow(sql_engine, seeded):
    orders, catalog = sql_engine.orders, sql_engine.catalog

    order_id = orders.place_order(seeded.user_id, [line(seeded.product_a, 2), line(seeded.product_b, 2)])
    assert orders.get_order(order_id).status == "placed"
    assert catalog.get_on_hand(seeded.product_a) == 3
    assert orders.order_total(order_id) == Decimal("25.00")

    with pytest.raises(AmountMismatch):
        orders.record_payment(order_id, "30.00", "card")

    payment_id = orders.record_payment(order_id, "25.00", "card", metadata={"attempt": 1})
    orders.capture_payment(payment_id)
    assert orders.get_order(order_id).status == "paid"
    assert orders.get_payment(payment_id).metadata == {"attempt": 1}

    orders.dispatch_shipment(order_id, "UPS", tracking_no="1Z1")
    orders.deliver_shipment(order_id)
    assert orders.get_shipment(order_id).status == "delivered"
    assert orders.get_order(order_id).status == "shipped"
    assert catalog.verify_ledger() == []


def test_failed_order_leaves_nothing_behind(sql_engine, seeded):
    orders, catalog = sql_engine.orders, sql_engine.catalog
    with pytest.raises(InsufficientStock):
        orders.place_order(seeded.user_id, [line(seeded.product_a, 1), line(seeded.product_c, 3)])

    store = sql_engine.store
    scope = store.begin()
    assert list(scope.scan_by_index(ORDER, "user_id", seeded.user_id)) == []
    assert len(list(scope.scan_by_index(INVENTORY_MOVEMENT, "product_id", seeded.product_a))) == 1
    store.abort(scope)
    assert catalog.get_on_hand(seeded.product_a) == 5


def test_cancel_twice_restores_once(sql_engine, seeded):
    orders, catalog = sql_engine.orders, sql_engine.catalog
    order_id = orders.place_order(seeded.user_id, [line(seeded.product_b, 4)])
    orders.cancel_order(order_id)
    with pytest.raises(InvalidTransition):
        orders.cancel_order(order_id)
    assert catalog.get_on_hand(seeded.product_b) == 10
    assert catalog.verify_ledger() == []


def test_batch_placement_uses_savepoints(sql_engine, seeded):
    orders, catalog = sql_engine.orders, sql_engine.catalog
    results = orders.place_orders([
        OrderRequest(seeded.user_id, [line(seeded.product_a, 1)]),
        OrderRequest(seeded.user_id, [line(seeded.product_b, 1), line(seeded.product_c, 9)]),
        OrderRequest(seeded.user_id, [line(seeded.product_b, 2)]),
    ])
    assert [r.ok for r in results] == [True, False, True]
    assert catalog.get_on_hand(seeded.product_a) == 4
    assert catalog.get_on_hand(seeded.product_b) == 8
    assert catalog.verify_ledger() == []


def test_checkpoint_rollback(sql_engine):
    store = sql_engine.store
    scope = store.begin()
    scope.insert(CATEGORY, Category(id="c1", name="Kept", created_at=utcnow()))
    checkpoint = scope.checkpoint()
    scope.insert(CATEGORY, Category(id="c2", name="Dropped", created_at=utcnow()))
    scope.rollback_to_checkpoint(checkpoint)
    assert scope.find(CATEGORY, "c2") is None
    scope.insert(CATEGORY, Category(id="c3", name="Also kept", created_at=utcnow()))
    scope.release_checkpoint(checkpoint)
    store.commit(scope)

    scope = store.begin()
    assert scope.find(CATEGORY, "c1") is not None
    assert scope.find(CATEGORY, "c2") is None
    assert scope.find(CATEGORY, "c3") is not None
    store.abort(scope)


def test_unique_constraint_is_translated(sql_engine):
    store = sql_engine.store
    scope = store.begin()
    scope.insert(USER, User(id="u1", email="dup@example.com", full_name="One", created_at=utcnow()))
    with pytest.raises(DuplicateKey) as excinfo:
        scope.insert(USER, User(id="u2", email="dup@example.com", full_name="Two", created_at=utcnow()))
    assert excinfo.value.entity_type == USER
    assert excinfo.value.field == "email"
    store.abort(scope)


def test_restricted_delete(sql_engine, seeded):
    with pytest.raises(InvalidReference):
        sql_engine.catalog.delete_category(seeded.category_id)


def test_stale_update_is_a_conflict(sql_engine, seeded):
    store = sql_engine.store
    stale_scope = store.begin()
    stale = stale_scope.get(INVENTORY, seeded.product_a)

    scope = store.begin()
    record = scope.get(INVENTORY, seeded.product_a)
    scope.put(INVENTORY, seeded.product_a, replace(record, on_hand=3))
    store.commit(scope)

    try:
        with pytest.raises(Conflict):
            stale_scope.put(INVENTORY, seeded.product_a, replace(stale, on_hand=2))
            store.commit(stale_scope)
    finally:
        if stale_scope.active:
            store.abort(stale_scope)

    scope = store.begin()
    assert scope.get(INVENTORY, seeded.product_a).on_hand == 3
    store.abort(scope)


def test_payment_metadata_column(sql_engine, seeded):
    orders = sql_engine.orders
    order_id = orders.place_order(seeded.user_id, [line(seeded.product_c, 1)])
    payment_id = orders.record_payment(order_id, "20.00", "card", provider_txn="tx-9")
    store = sql_engine.store
    scope = store.begin()
    payment = scope.get(PAYMENT, payment_id)
    assert payment.metadata is None
    assert payment.provider_txn == "tx-9"
    store.abort(scope)
