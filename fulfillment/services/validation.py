# Overview: Per-entity constraint checks run before each write.

"""
Constraint Validator

Stateless checks, one per entity type. Each takes a read view (an open scope)
and a candidate record and returns a ValidationResult: accepted, or exactly one
Violation naming the offending field. ensure_valid() raises the matching
ConstraintViolation subclass.

The store repeats the uniqueness and reference checks at commit, so a race
between two scopes that both pass here is still caught there.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..errors import (
    ConstraintViolation, DuplicateKey, InvalidEnumValue, InvalidReference,
    MissingValue, NonNegativeViolation,
)
from ..models import (
    USER, CATEGORY, PRODUCT, ORDER, ORDER_ITEM, PAYMENT, SHIPMENT,
    INVENTORY, INVENTORY_MOVEMENT,
)
from ..models.entities import (
    ORDER_CART, ORDER_STATUSES, PAYMENT_STATUSES, SHIPMENT_STATUSES,
    MOVEMENT_REASONS, REASON_PURCHASE,
)


DUPLICATE_KEY = "duplicate_key"
NON_NEGATIVE = "non_negative"
INVALID_REFERENCE = "invalid_reference"
INVALID_ENUM_VALUE = "invalid_enum_value"
MISSING_VALUE = "missing_value"

_EXCEPTIONS = {
    DUPLICATE_KEY: DuplicateKey,
    NON_NEGATIVE: NonNegativeViolation,
    INVALID_REFERENCE: InvalidReference,
    INVALID_ENUM_VALUE: InvalidEnumValue,
    MISSING_VALUE: MissingValue,
}


@dataclass(frozen=True)
class Violation:
    kind: str
    entity_type: str
    field: str
    detail: Optional[str] = None

    def to_exception(self) -> ConstraintViolation:
        return _EXCEPTIONS[self.kind](self.entity_type, self.field, self.detail)


@dataclass(frozen=True)
class ValidationResult:
    violation: Optional[Violation] = None

    @property
    def ok(self) -> bool:
        return self.violation is None

    def raise_if_invalid(self) -> None:
        if self.violation is not None:
            raise self.violation.to_exception()


ACCEPTED = ValidationResult()


def _reject(kind: str, entity_type: str, field: str, detail: str | None = None) -> ValidationResult:
    return ValidationResult(Violation(kind, entity_type, field, detail))


# =============================================================================
# SHARED CHECKS
# =============================================================================
# Each returns a ValidationResult; the first rejection wins.

def _first_violation(*checks) -> ValidationResult:
    for check in checks:
        result = check()
        if not result.ok:
            return result
    return ACCEPTED


def _required(entity_type: str, entity, field: str) -> ValidationResult:
    value = getattr(entity, field)
    if value is None or (isinstance(value, str) and not value.strip()):
        return _reject(MISSING_VALUE, entity_type, field, "value is required")
    return ACCEPTED


def _non_negative(entity_type: str, entity, field: str) -> ValidationResult:
    value = getattr(entity, field)
    if value is None or value < 0:
        return _reject(NON_NEGATIVE, entity_type, field, f"must be >= 0, got {value}")
    return ACCEPTED


def _money(entity_type: str, entity, field: str) -> ValidationResult:
    value = getattr(entity, field)
    if not isinstance(value, Decimal):
        return _reject(NON_NEGATIVE, entity_type, field, "must be a Decimal amount")
    return _non_negative(entity_type, entity, field)


def _one_of(entity_type: str, entity, field: str, allowed) -> ValidationResult:
    value = getattr(entity, field)
    if value not in allowed:
        return _reject(
            INVALID_ENUM_VALUE, entity_type, field,
            f"{value!r} is not one of {', '.join(allowed)}",
        )
    return ACCEPTED


def _unique(view, entity_type: str, entity, field: str) -> ValidationResult:
    value = getattr(entity, field)
    if value is None:
        return ACCEPTED
    schema = view.store.schema(entity_type)
    own_key = schema.key_of(entity)
    for other in view.scan_by_index(entity_type, field, value):
        if schema.key_of(other) != own_key:
            return _reject(DUPLICATE_KEY, entity_type, field, f"{value!r} already exists")
    return ACCEPTED


def _exists(view, entity_type: str, entity, field: str, target: str) -> ValidationResult:
    value = getattr(entity, field)
    if value is None:
        return ACCEPTED
    if view.find(target, value) is None:
        return _reject(INVALID_REFERENCE, entity_type, field, f"{target} {value!r} does not exist")
    return ACCEPTED


# =============================================================================
# PER-ENTITY VALIDATORS
# =============================================================================

def validate_user(view, user) -> ValidationResult:
    return _first_violation(
        lambda: _required(USER, user, "email"),
        lambda: _required(USER, user, "full_name"),
        lambda: _unique(view, USER, user, "email"),
    )


def validate_category(view, category) -> ValidationResult:
    return _first_violation(
        lambda: _required(CATEGORY, category, "name"),
        lambda: _unique(view, CATEGORY, category, "name"),
    )


def validate_product(view, product) -> ValidationResult:
    return _first_violation(
        lambda: _required(PRODUCT, product, "sku"),
        lambda: _required(PRODUCT, product, "name"),
        lambda: _money(PRODUCT, product, "unit_price"),
        lambda: _unique(view, PRODUCT, product, "sku"),
        lambda: _exists(view, PRODUCT, product, "category_id", CATEGORY),
    )


def validate_order(view, order) -> ValidationResult:
    return _first_violation(
        lambda: _one_of(ORDER, order, "status", ORDER_STATUSES),
        lambda: _unique(view, ORDER, order, "external_ref"),
        lambda: _required(ORDER, order, "user_id"),
        lambda: _exists(view, ORDER, order, "user_id", USER),
    )


def validate_order_item(view, item) -> ValidationResult:
    def _positive_quantity() -> ValidationResult:
        if not isinstance(item.quantity, int) or isinstance(item.quantity, bool) or item.quantity <= 0:
            return _reject(NON_NEGATIVE, ORDER_ITEM, "quantity", f"must be > 0, got {item.quantity!r}")
        return ACCEPTED

    return _first_violation(
        _positive_quantity,
        lambda: _money(ORDER_ITEM, item, "unit_price"),
        lambda: _exists(view, ORDER_ITEM, item, "order_id", ORDER),
        lambda: _exists(view, ORDER_ITEM, item, "product_id", PRODUCT),
    )


def validate_payment(view, payment) -> ValidationResult:
    return _first_violation(
        lambda: _one_of(PAYMENT, payment, "status", PAYMENT_STATUSES),
        lambda: _money(PAYMENT, payment, "amount"),
        lambda: _required(PAYMENT, payment, "provider"),
        lambda: _unique(view, PAYMENT, payment, "order_id"),
        lambda: _unique(view, PAYMENT, payment, "provider_txn"),
        lambda: _exists(view, PAYMENT, payment, "order_id", ORDER),
    )


def validate_shipment(view, shipment) -> ValidationResult:
    return _first_violation(
        lambda: _one_of(SHIPMENT, shipment, "status", SHIPMENT_STATUSES),
        lambda: _unique(view, SHIPMENT, shipment, "order_id"),
        lambda: _unique(view, SHIPMENT, shipment, "tracking_no"),
        lambda: _exists(view, SHIPMENT, shipment, "order_id", ORDER),
    )


def validate_inventory_record(view, record) -> ValidationResult:
    def _whole_units() -> ValidationResult:
        if not isinstance(record.on_hand, int) or isinstance(record.on_hand, bool):
            return _reject(NON_NEGATIVE, INVENTORY, "on_hand", "must be a whole number of units")
        return ACCEPTED

    return _first_violation(
        _whole_units,
        lambda: _non_negative(INVENTORY, record, "on_hand"),
        lambda: _exists(view, INVENTORY, record, "product_id", PRODUCT),
    )


def validate_movement(view, movement) -> ValidationResult:
    def _signed_delta() -> ValidationResult:
        delta = movement.delta
        if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
            return _reject(NON_NEGATIVE, INVENTORY_MOVEMENT, "delta", f"must be a non-zero integer, got {delta!r}")
        if movement.reason == REASON_PURCHASE and delta < 0:
            return _reject(NON_NEGATIVE, INVENTORY_MOVEMENT, "delta", "purchases must add stock")
        return ACCEPTED

    return _first_violation(
        lambda: _one_of(INVENTORY_MOVEMENT, movement, "reason", MOVEMENT_REASONS),
        _signed_delta,
        lambda: _exists(view, INVENTORY_MOVEMENT, movement, "product_id", PRODUCT),
        lambda: _exists(view, INVENTORY_MOVEMENT, movement, "order_id", ORDER),
    )


VALIDATORS = {
    USER: validate_user,
    CATEGORY: validate_category,
    PRODUCT: validate_product,
    ORDER: validate_order,
    ORDER_ITEM: validate_order_item,
    PAYMENT: validate_payment,
    SHIPMENT: validate_shipment,
    INVENTORY: validate_inventory_record,
    INVENTORY_MOVEMENT: validate_movement,
}


def validate(view, entity_type: str, entity) -> ValidationResult:
    try:
        validator = VALIDATORS[entity_type]
    except KeyError:
        raise ValueError(f"No validator for entity type {entity_type}") from None
    return validator(view, entity)


def ensure_valid(view, entity_type: str, entity) -> None:
    validate(view, entity_type, entity).raise_if_invalid()


# =============================================================================
# DESTRUCTIVE DELETES
# =============================================================================

def validate_delete(view, entity_type: str, key) -> ValidationResult:
    """
    Reject physical removal of rows that carry order history.

    - products referenced by any order item must be deactivated instead
    - orders past `cart` are never removed
    The store enforces the remaining RESTRICT references on its own.
    """
    if entity_type == PRODUCT:
        if next(iter(view.scan_by_index(ORDER_ITEM, "product_id", key)), None) is not None:
            return _reject(
                INVALID_REFERENCE, ORDER_ITEM, "product_id",
                f"product {key!r} has order history; deactivate it instead",
            )
    if entity_type == ORDER:
        order = view.find(ORDER, key)
        if order is not None and order.status != ORDER_CART:
            return _reject(
                INVALID_REFERENCE, ORDER, "status",
                f"order {key!r} is {order.status}; only carts can be removed",
            )
        if next(iter(view.scan_by_index(INVENTORY_MOVEMENT, "order_id", key)), None) is not None:
            return _reject(
                INVALID_REFERENCE, INVENTORY_MOVEMENT, "order_id",
                f"order {key!r} has stock movements",
            )
    return ACCEPTED
