"""Inventory ledger tests: on_hand, movements and drift detection."""

from dataclasses import replace

import pytest

from fulfillment.errors import InsufficientStock, InvalidEnumValue, NonNegativeViolation, NotFound
from fulfillment.models import INVENTORY
from fulfillment.services.inventory_service import (
    apply_movement, find_ledger_drift, get_on_hand, movement_total, summarize_movements,
)


def test_initial_stock_is_booked_as_purchase(catalog, seed):
    assert catalog.get_on_hand(seed.product_a) == 5
    movements = catalog.list_movements(seed.product_a)
    assert [(m.delta, m.reason) for m in movements] == [(5, "purchase")]


def test_product_without_initial_stock_has_zero_record_and_no_movements(catalog, seed):
    product_id = catalog.create_product(seed.category_id, "SKU-Z", "Empty", "3.00")
    assert catalog.get_on_hand(product_id) == 0
    assert catalog.list_movements(product_id) == []
    assert catalog.verify_ledger() == []


def test_apply_movement_updates_record_and_appends(store, seed):
    scope = store.begin()
    movement = apply_movement(scope, seed.product_b, -4, "adjustment")
    assert movement.delta == -4
    assert get_on_hand(scope, seed.product_b) == 6
    assert movement_total(scope, seed.product_b) == 6
    store.commit(scope)


def test_insufficient_stock_writes_nothing(store, seed):
    scope = store.begin()
    with pytest.raises(InsufficientStock) as excinfo:
        apply_movement(scope, seed.product_c, -2, "sale")
    assert excinfo.value.on_hand == 1
    assert excinfo.value.delta == -2
    assert get_on_hand(scope, seed.product_c) == 1
    assert movement_total(scope, seed.product_c) == 1
    store.abort(scope)


def test_stock_can_reach_exactly_zero(store, seed):
    scope = store.begin()
    apply_movement(scope, seed.product_c, -1, "adjustment")
    assert get_on_hand(scope, seed.product_c) == 0
    store.commit(scope)


def test_invalid_movements_are_rejected(store, seed):
    scope = store.begin()
    with pytest.raises(NonNegativeViolation):
        apply_movement(scope, seed.product_a, 0, "adjustment")
    with pytest.raises(NonNegativeViolation):
        apply_movement(scope, seed.product_a, -1, "purchase")
    with pytest.raises(InvalidEnumValue):
        apply_movement(scope, seed.product_a, 1, "gift")
    with pytest.raises(NotFound):
        apply_movement(scope, "no-such-product", 1, "purchase")
    assert get_on_hand(scope, seed.product_a) == 5
    store.abort(scope)


def test_drift_is_detected(store, catalog, seed):
    assert catalog.verify_ledger() == []

    # bypass the ledger to break the invariant
    scope = store.begin()
    record = scope.get(INVENTORY, seed.product_b)
    scope.put(INVENTORY, seed.product_b, replace(record, on_hand=record.on_hand + 1))
    store.commit(scope)

    assert catalog.verify_ledger() == [seed.product_b]
    scope = store.begin()
    assert find_ledger_drift(scope) == {seed.product_b: (11, 10)}
    store.abort(scope)


def test_drift_check_includes_inactive_products(store, catalog, seed):
    catalog.deactivate_product(seed.product_a)
    scope = store.begin()
    record = scope.get(INVENTORY, seed.product_a)
    scope.put(INVENTORY, seed.product_a, replace(record, on_hand=0))
    store.commit(scope)

    assert catalog.verify_ledger() == [seed.product_a]


def test_movement_summary(catalog, orders, seed):
    orders.place_order(seed.user_id, [{"product_id": seed.product_b, "quantity": 3}])
    orders.adjust_stock(seed.product_b, 2, "adjustment")
    assert catalog.movement_summary(seed.product_b) == {"purchase": 10, "sale": -3, "adjustment": 2}
    assert summarize_movements([]) == {}
