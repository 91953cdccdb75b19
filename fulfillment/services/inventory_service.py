# Overview: Inventory ledger; on-hand stock and the append-only movement log.

"""
Inventory Ledger Invariants (authoritative)

- Exactly one InventoryRecord per product, created together with the product.
- on_hand is never negative.
- For every product: on_hand == SUM(delta) over its InventoryMovement rows.
- Movements are append-only; the only later change the store makes is clearing
  order_id when the referenced order is removed.
- apply_movement reads on_hand, writes the new record and appends the movement
  in the caller's scope: both commit or neither does.

Concurrency:
- The read of on_hand is a locking read in the same scope as the write, so the
  store's commit-time conflict check covers it. When the store cannot detect
  conflicts, the per-product exclusive lock is taken first.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Iterator, Optional

from ..errors import InsufficientStock
from ..models import INVENTORY, INVENTORY_MOVEMENT, PRODUCT, InventoryMovement, InventoryRecord, new_id
from ..store.base import Scope
from ..time_utils import utcnow
from .concurrency import get_for_update
from .validation import ensure_valid

logger = logging.getLogger(__name__)


def inventory_lock_key(product_id: str) -> tuple[str, str]:
    return (INVENTORY, product_id)


def create_inventory_record(scope: Scope, product_id: str, *, now: Optional[datetime] = None) -> InventoryRecord:
    """Create the zero-stock record that every product owns."""
    record = InventoryRecord(product_id=product_id, on_hand=0, updated_at=now or utcnow())
    ensure_valid(scope, INVENTORY, record)
    scope.insert(INVENTORY, record)
    return record


def get_on_hand(scope: Scope, product_id: str) -> int:
    return scope.get(INVENTORY, product_id).on_hand


def apply_movement(
    scope: Scope,
    product_id: str,
    delta: int,
    reason: str,
    order_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> InventoryMovement:
    """
    Change a product's stock by `delta` and log the movement.

    Args:
        scope: Open scope the record update and movement are written into
        product_id: Product whose stock changes
        delta: Signed quantity (negative for stock leaving)
        reason: purchase, sale, adjustment or return
        order_id: Order that caused the movement (optional)

    Returns:
        The appended InventoryMovement

    Raises:
        NotFound: If the product has no inventory record
        InsufficientStock: If on_hand + delta would be negative
        ConstraintViolation: If the movement itself is invalid
    """
    now = now or utcnow()
    record = get_for_update(scope, INVENTORY, product_id)

    new_on_hand = record.on_hand + delta
    if new_on_hand < 0:
        raise InsufficientStock(product_id, record.on_hand, delta)

    movement = InventoryMovement(
        id=new_id(),
        product_id=product_id,
        delta=delta,
        reason=reason,
        created_at=now,
        order_id=order_id,
    )
    ensure_valid(scope, INVENTORY_MOVEMENT, movement)

    updated = replace(record, on_hand=new_on_hand, updated_at=now)
    ensure_valid(scope, INVENTORY, updated)

    scope.put(INVENTORY, product_id, updated)
    scope.insert(INVENTORY_MOVEMENT, movement)

    logger.debug(
        "inventory %s: %+d (%s) -> on_hand=%d order=%s",
        product_id, delta, reason, new_on_hand, order_id,
    )
    return movement


def iter_movements(scope: Scope, product_id: str) -> Iterator[InventoryMovement]:
    return scope.scan_by_index(INVENTORY_MOVEMENT, "product_id", product_id)


def movement_total(scope: Scope, product_id: str) -> int:
    return sum(movement.delta for movement in iter_movements(scope, product_id))


def find_ledger_drift(scope: Scope) -> dict[str, tuple[int, int]]:
    """
    Products whose on_hand disagrees with their movement sum.

    Returns:
        {product_id: (on_hand, movement_total)} for every mismatch; empty when
        the ledger is consistent
    """
    drift = {}
    products = list(scope.scan_by_index(PRODUCT, "is_active", True))
    products.extend(scope.scan_by_index(PRODUCT, "is_active", False))
    for product in products:
        record = scope.find(INVENTORY, product.id)
        on_hand = record.on_hand if record is not None else 0
        total = movement_total(scope, product.id)
        if record is None or on_hand != total:
            drift[product.id] = (on_hand, total)
    if drift:
        logger.error("inventory ledger drift detected for %d products", len(drift))
    return drift


def summarize_movements(movements) -> dict[str, int]:
    """Net delta per reason, e.g. {"purchase": 10, "sale": -3}."""
    totals: dict[str, int] = defaultdict(int)
    for movement in movements:
        totals[movement.reason] += movement.delta
    return dict(totals)
