from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from ..errors import NonNegativeViolation


# =============================================================================
# WIRE VOCABULARY (reproduced verbatim for reporting compatibility)
# =============================================================================

ORDER_CART = "cart"
ORDER_PLACED = "placed"
ORDER_PAID = "paid"
ORDER_SHIPPED = "shipped"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

ORDER_STATUSES = (
    ORDER_CART,
    ORDER_PLACED,
    ORDER_PAID,
    ORDER_SHIPPED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
)

PAYMENT_PENDING = "pending"
PAYMENT_CAPTURED = "captured"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_CAPTURED, PAYMENT_FAILED, PAYMENT_REFUNDED)

SHIPMENT_PENDING = "pending"
SHIPMENT_SHIPPED = "shipped"
SHIPMENT_DELIVERED = "delivered"
SHIPMENT_RETURNED = "returned"

SHIPMENT_STATUSES = (SHIPMENT_PENDING, SHIPMENT_SHIPPED, SHIPMENT_DELIVERED, SHIPMENT_RETURNED)

REASON_PURCHASE = "purchase"
REASON_SALE = "sale"
REASON_ADJUSTMENT = "adjustment"
REASON_RETURN = "return"

MOVEMENT_REASONS = (REASON_PURCHASE, REASON_SALE, REASON_ADJUSTMENT, REASON_RETURN)


# =============================================================================
# ENTITY TYPE NAMES
# =============================================================================

USER = "user"
CATEGORY = "category"
PRODUCT = "product"
ORDER = "order"
ORDER_ITEM = "order_item"
PAYMENT = "payment"
SHIPMENT = "shipment"
INVENTORY = "inventory"
INVENTORY_MOVEMENT = "inventory_movement"


CENT = Decimal("0.01")


def to_money(value, entity_type: str = PAYMENT, field: str = "amount") -> Decimal:
    """
    Normalize a price/amount to a two-place Decimal (numeric(12,2)).

    Raises:
        NonNegativeViolation: If `value` is not a finite number
    """
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise InvalidOperation(value)
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise NonNegativeViolation(entity_type, field, f"{value!r} is not a monetary amount") from exc


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# ENTITIES
# =============================================================================
# Records are immutable; writers build a new version with `dataclasses.replace`
# and put it back through the store.

@dataclass(frozen=True)
class User:
    id: str
    email: str
    full_name: str
    created_at: datetime


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    created_at: datetime


@dataclass(frozen=True)
class Product:
    id: str
    category_id: str
    sku: str
    name: str
    unit_price: Decimal
    created_at: datetime
    description: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class Order:
    id: str
    user_id: str
    status: str
    created_at: datetime
    placed_at: Optional[datetime] = None
    external_ref: Optional[str] = None


@dataclass(frozen=True)
class OrderItem:
    order_id: str
    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass(frozen=True)
class Payment:
    id: str
    order_id: str
    amount: Decimal
    provider: str
    status: str
    created_at: datetime
    provider_txn: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class Shipment:
    id: str
    order_id: str
    status: str
    created_at: datetime
    carrier: Optional[str] = None
    tracking_no: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


@dataclass(frozen=True)
class InventoryRecord:
    product_id: str
    on_hand: int
    updated_at: datetime


@dataclass(frozen=True)
class InventoryMovement:
    id: str
    product_id: str
    delta: int
    reason: str
    created_at: datetime
    order_id: Optional[str] = None


