"""Constraint validator tests: one violation per rejected record, naming the field."""

from dataclasses import replace
from decimal import Decimal

import pytest

from fulfillment.errors import DuplicateKey, InvalidEnumValue, InvalidReference, MissingValue, NonNegativeViolation
from fulfillment.models import (
    INVENTORY, INVENTORY_MOVEMENT, ORDER, ORDER_ITEM, PAYMENT, PRODUCT, SHIPMENT, USER,
    InventoryMovement, InventoryRecord, Order, OrderItem, Payment, Product, Shipment, User,
)
from fulfillment.services.validation import (
    ACCEPTED, DUPLICATE_KEY, INVALID_ENUM_VALUE, INVALID_REFERENCE, MISSING_VALUE, NON_NEGATIVE,
    ensure_valid, validate, validate_delete,
)
from fulfillment.time_utils import utcnow


@pytest.fixture
def view(store, seed):
    scope = store.begin()
    yield scope
    store.abort(scope)


def _product(seed, **changes):
    base = Product(
        id="new-product", category_id=seed.category_id, sku="SKU-NEW", name="New",
        unit_price=Decimal("1.00"), created_at=utcnow(),
    )
    return replace(base, **changes)


def test_valid_product_is_accepted(view, seed):
    result = validate(view, PRODUCT, _product(seed))
    assert result is ACCEPTED
    assert result.ok


def test_existing_record_does_not_collide_with_itself(view, seed):
    product = view.get(PRODUCT, seed.product_a)
    assert validate(view, PRODUCT, replace(product, name="Renamed")).ok


@pytest.mark.parametrize(
    "changes, kind, field",
    [
        ({"sku": "SKU-A"}, DUPLICATE_KEY, "sku"),
        ({"unit_price": Decimal("-0.01")}, NON_NEGATIVE, "unit_price"),
        ({"category_id": "missing"}, INVALID_REFERENCE, "category_id"),
        ({"sku": "  "}, MISSING_VALUE, "sku"),
    ],
)
def test_product_violations(view, seed, changes, kind, field):
    result = validate(view, PRODUCT, _product(seed, **changes))
    assert not result.ok
    assert result.violation.kind == kind
    assert result.violation.field == field
    assert result.violation.entity_type == PRODUCT


def test_duplicate_email_raises_duplicate_key(view, seed):
    user = User(id="other", email="ada@example.com", full_name="Imposter", created_at=utcnow())
    with pytest.raises(DuplicateKey) as excinfo:
        ensure_valid(view, USER, user)
    assert excinfo.value.field == "email"


def test_missing_user_id_on_order(view):
    order = Order(id="o", user_id="", status="cart", created_at=utcnow())
    with pytest.raises(MissingValue):
        ensure_valid(view, ORDER, order)


def test_unknown_order_status(view, seed):
    order = Order(id="o", user_id=seed.user_id, status="lost", created_at=utcnow())
    with pytest.raises(InvalidEnumValue) as excinfo:
        ensure_valid(view, ORDER, order)
    assert excinfo.value.field == "status"


def test_order_item_quantity_must_be_positive(view, seed):
    item = OrderItem(order_id="o", product_id=seed.product_a, quantity=0, unit_price=Decimal("1.00"))
    with pytest.raises(NonNegativeViolation) as excinfo:
        ensure_valid(view, ORDER_ITEM, item)
    assert excinfo.value.field == "quantity"


def test_order_item_requires_existing_order(view, seed):
    item = OrderItem(order_id="nope", product_id=seed.product_a, quantity=1, unit_price=Decimal("1.00"))
    with pytest.raises(InvalidReference) as excinfo:
        ensure_valid(view, ORDER_ITEM, item)
    assert excinfo.value.field == "order_id"


def test_inventory_record_cannot_go_negative(view, seed):
    record = InventoryRecord(product_id=seed.product_a, on_hand=-1, updated_at=utcnow())
    result = validate(view, INVENTORY, record)
    assert result.violation.kind == NON_NEGATIVE
    assert result.violation.field == "on_hand"


@pytest.mark.parametrize(
    "delta, reason, kind, field",
    [
        (0, "adjustment", NON_NEGATIVE, "delta"),
        (-1, "purchase", NON_NEGATIVE, "delta"),
        (1, "gift", INVALID_ENUM_VALUE, "reason"),
    ],
)
def test_movement_violations(view, seed, delta, reason, kind, field):
    movement = InventoryMovement(
        id="m", product_id=seed.product_a, delta=delta, reason=reason, created_at=utcnow(),
    )
    result = validate(view, INVENTORY_MOVEMENT, movement)
    assert result.violation.kind == kind
    assert result.violation.field == field


def test_payment_and_shipment_statuses(view, seed):
    payment = Payment(
        id="p", order_id="o", amount=Decimal("1.00"), provider="card", status="approved", created_at=utcnow(),
    )
    assert validate(view, PAYMENT, payment).violation.field == "status"

    shipment = Shipment(id="s", order_id="o", status="lost", created_at=utcnow())
    assert validate(view, SHIPMENT, shipment).violation.kind == INVALID_ENUM_VALUE


def test_unknown_entity_type(view):
    with pytest.raises(ValueError):
        validate(view, "invoice", object())


def test_validate_delete_rejects_product_with_order_history(store, seed, orders):
    orders.place_order(seed.user_id, [{"product_id": seed.product_a, "quantity": 1}])
    scope = store.begin()
    result = validate_delete(scope, PRODUCT, seed.product_a)
    assert result.violation.kind == INVALID_REFERENCE
    assert validate_delete(scope, PRODUCT, seed.product_b).ok
    store.abort(scope)


def test_validate_delete_rejects_placed_order(store, seed, orders):
    order_id = orders.place_order(seed.user_id, [{"product_id": seed.product_a, "quantity": 1}])
    scope = store.begin()
    assert validate_delete(scope, ORDER, order_id).violation.field == "status"
    store.abort(scope)
