# Overview: Order transaction coordinator; every business action is one atomic scope.

"""
Order Transaction Coordinator

DESIGN PRINCIPLES:
- One public method per business action; each runs inside exactly one scope
  and either commits completely or leaves the store untouched.
- Validation and state-machine checks run before each write; the ledger does
  every stock change.
- Conflict and Timeout are retried (bounded, with backoff) by re-running the
  whole action against fresh state. All other failures surface unchanged.
- Order status moves to paid / refunded / shipped only together with the
  payment or shipment transition that causes it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence

from ..errors import AmountMismatch, FulfillmentError, InvalidEnumValue, InvalidReference, NonNegativeViolation
from ..models import (
    ORDER, ORDER_ITEM, PAYMENT, PRODUCT, SHIPMENT, USER, INVENTORY_MOVEMENT,
    Order, OrderItem, Payment, Shipment,
    new_id, to_money,
)
from ..models.entities import (
    ORDER_CART, ORDER_PLACED, ORDER_PAID, ORDER_SHIPPED, ORDER_CANCELLED, ORDER_REFUNDED,
    PAYMENT_PENDING, PAYMENT_CAPTURED, PAYMENT_FAILED, PAYMENT_REFUNDED,
    SHIPMENT_PENDING, SHIPMENT_SHIPPED, SHIPMENT_DELIVERED, SHIPMENT_RETURNED,
    REASON_SALE, REASON_ADJUSTMENT, REASON_RETURN, MOVEMENT_REASONS,
)
from ..store.base import Scope
from .concurrency import TransactionalService, get_for_update, lock_for_update
from .inventory_service import apply_movement, inventory_lock_key
from .lifecycle_service import ORDER_LIFECYCLE, PAYMENT_LIFECYCLE, SHIPMENT_LIFECYCLE, transition
from .validation import ensure_valid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class OrderRequest:
    user_id: str
    items: Sequence[Any]
    external_ref: Optional[str] = None


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one request in place_orders()."""
    request: OrderRequest
    order_id: Optional[str] = None
    error: Optional[FulfillmentError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _normalize_lines(items: Iterable[Any]) -> list[OrderLine]:
    """
    Accept OrderLine objects or {"product_id", "quantity"} mappings.

    Lines for the same product are merged (OrderItem is keyed by
    order_id + product_id). Result is ordered by product_id so concurrent
    orders touch inventory rows in the same order.
    """
    merged: dict[str, int] = {}
    for item in items:
        if isinstance(item, Mapping):
            product_id, quantity = item["product_id"], item["quantity"]
        else:
            product_id, quantity = item.product_id, item.quantity
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise NonNegativeViolation(ORDER_ITEM, "quantity", f"must be > 0, got {quantity!r}")
        merged[product_id] = merged.get(product_id, 0) + quantity
    if not merged:
        raise NonNegativeViolation(ORDER_ITEM, "quantity", "an order needs at least one item")
    return [OrderLine(product_id, merged[product_id]) for product_id in sorted(merged)]


def _batch_product_ids(requests: Iterable[OrderRequest]) -> list[str]:
    product_ids = set()
    for request in requests:
        for item in request.items:
            product_ids.add(item["product_id"] if isinstance(item, Mapping) else item.product_id)
    return sorted(product_ids)


def order_items(scope: Scope, order_id: str) -> list[OrderItem]:
    return sorted(scope.scan_by_index(ORDER_ITEM, "order_id", order_id), key=lambda item: item.product_id)


def calculate_order_total(scope: Scope, order_id: str) -> Decimal:
    """Order total is derived from its items (quantity x snapshotted unit_price)."""
    return to_money(sum((item.line_total for item in order_items(scope, order_id)), Decimal("0")))


def _payment_for_order(scope: Scope, order_id: str, *, for_update: bool = False) -> Optional[Payment]:
    return next(iter(scope.scan_by_index(PAYMENT, "order_id", order_id, for_update=for_update)), None)


def _shipment_for_order(scope: Scope, order_id: str, *, for_update: bool = False) -> Optional[Shipment]:
    return next(iter(scope.scan_by_index(SHIPMENT, "order_id", order_id, for_update=for_update)), None)


class OrderCoordinator(TransactionalService):
    """Executes order, payment, shipment and stock actions as atomic units."""

    # =========================================================================
    # ORDER PLACEMENT
    # =========================================================================

    def place_order(self, user_id: str, items: Iterable[Any], external_ref: Optional[str] = None) -> str:
        """
        Create a placed order, snapshot prices and deduct stock.

        Args:
            user_id: Ordering user (must exist)
            items: OrderLine objects or {"product_id", "quantity"} mappings
            external_ref: Optional unique reference from an external system

        Returns:
            The new order id

        Raises:
            NotFound: If the user or a product does not exist
            InvalidReference: If a product is inactive
            InsufficientStock: If any line exceeds on_hand (nothing is written)
            DuplicateKey: If external_ref is already used
        """
        lines = _normalize_lines(items)

        def _op(scope: Scope) -> str:
            return self._place_order_in_scope(scope, user_id, lines, external_ref)

        order_id = self._execute("place_order", _op)
        logger.info("placed order %s for user %s (%d lines)", order_id, user_id, len(lines))
        return order_id

    def place_orders(self, requests: Iterable[OrderRequest]) -> list[BatchResult]:
        """
        Place several orders in one scope, each behind its own checkpoint.

        A request that fails is rolled back to its checkpoint and reported in
        its BatchResult; the remaining orders commit together.
        """
        requests = list(requests)

        def _op(scope: Scope) -> list[BatchResult]:
            # every product in the batch, locked up front in one global order
            for product_id in _batch_product_ids(requests):
                lock_for_update(scope, inventory_lock_key(product_id))
            results = []
            for request in requests:
                checkpoint_id = scope.checkpoint()
                try:
                    lines = _normalize_lines(request.items)
                    order_id = self._place_order_in_scope(scope, request.user_id, lines, request.external_ref)
                except FulfillmentError as exc:
                    if exc.retryable:
                        raise
                    scope.rollback_to_checkpoint(checkpoint_id)
                    scope.release_checkpoint(checkpoint_id)
                    results.append(BatchResult(request, error=exc))
                    continue
                scope.release_checkpoint(checkpoint_id)
                results.append(BatchResult(request, order_id=order_id))
            return results

        results = self._execute("place_orders", _op)
        logger.info(
            "batch placement: %d placed, %d rejected",
            sum(1 for r in results if r.ok), sum(1 for r in results if not r.ok),
        )
        return results

    def _place_order_in_scope(
        self, scope: Scope, user_id: str, lines: list, external_ref: Optional[str]
    ) -> str:
        now = self.clock()
        scope.get(USER, user_id)

        order = Order(
            id=new_id(),
            user_id=user_id,
            status=ORDER_CART,
            created_at=now,
            external_ref=external_ref,
        )
        ensure_valid(scope, ORDER, order)
        scope.insert(ORDER, order)

        for line in lines:
            product = scope.get(PRODUCT, line.product_id)
            if not product.is_active:
                raise InvalidReference(ORDER_ITEM, "product_id", f"product {product.id!r} is inactive")
            item = OrderItem(
                order_id=order.id,
                product_id=product.id,
                quantity=line.quantity,
                unit_price=product.unit_price,
            )
            ensure_valid(scope, ORDER_ITEM, item)
            scope.insert(ORDER_ITEM, item)
            apply_movement(scope, product.id, -line.quantity, REASON_SALE, order.id, now=now)

        placed = transition(ORDER_LIFECYCLE, order, ORDER_PLACED, placed_at=now)
        scope.put(ORDER, placed.id, placed)
        return order.id

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    def record_payment(
        self,
        order_id: str,
        amount,
        provider: str,
        provider_txn: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        """
        Record a pending payment for a placed order.

        Raises:
            InvalidTransition: If the order is not `placed`
            AmountMismatch: If amount differs from the order total
            DuplicateKey: If the order already has a payment or provider_txn is reused
        """
        amount = to_money(amount)

        def _op(scope: Scope) -> str:
            order = get_for_update(scope, ORDER, order_id)
            if order.status != ORDER_PLACED:
                # the only way forward from here is placed -> paid
                ORDER_LIFECYCLE.require_transition(order.status, ORDER_PAID)
            total = calculate_order_total(scope, order_id)
            if amount != total:
                raise AmountMismatch(order_id, total, amount)
            payment = Payment(
                id=new_id(),
                order_id=order_id,
                amount=amount,
                provider=provider,
                status=PAYMENT_PENDING,
                created_at=self.clock(),
                provider_txn=provider_txn,
                metadata=dict(metadata) if metadata is not None else None,
            )
            ensure_valid(scope, PAYMENT, payment)
            scope.insert(PAYMENT, payment)
            # rewrite the order unchanged so a concurrent cancel conflicts on it
            scope.put(ORDER, order_id, order)
            return payment.id

        payment_id = self._execute("record_payment", _op)
        logger.info("recorded payment %s for order %s (%s via %s)", payment_id, order_id, amount, provider)
        return payment_id

    def capture_payment(self, payment_id: str) -> None:
        """Payment pending -> captured and order placed -> paid, together."""

        def _op(scope: Scope) -> None:
            order, payment = self._lock_payment(scope, payment_id)
            captured = transition(PAYMENT_LIFECYCLE, payment, PAYMENT_CAPTURED)
            paid = transition(ORDER_LIFECYCLE, order, ORDER_PAID)
            scope.put(PAYMENT, payment_id, captured)
            scope.put(ORDER, order.id, paid)

        self._execute("capture_payment", _op)
        logger.info("captured payment %s", payment_id)

    def fail_payment(self, payment_id: str) -> None:
        """Payment pending -> failed; the order stays placed."""

        def _op(scope: Scope) -> None:
            _, payment = self._lock_payment(scope, payment_id)
            scope.put(PAYMENT, payment_id, transition(PAYMENT_LIFECYCLE, payment, PAYMENT_FAILED))

        self._execute("fail_payment", _op)
        logger.info("payment %s failed", payment_id)

    def refund_payment(self, payment_id: str) -> None:
        """
        Payment captured -> refunded and order paid -> refunded, together.

        The goods never left (a shipped order cannot be refunded here), so
        every item is restocked with an adjustment movement.
        """

        def _op(scope: Scope) -> None:
            order, payment = self._lock_payment(scope, payment_id)
            refunded_payment = transition(PAYMENT_LIFECYCLE, payment, PAYMENT_REFUNDED)
            refunded_order = transition(ORDER_LIFECYCLE, order, ORDER_REFUNDED)
            now = self.clock()
            for item in order_items(scope, order.id):
                apply_movement(scope, item.product_id, item.quantity, REASON_ADJUSTMENT, order.id, now=now)
            scope.put(PAYMENT, payment_id, refunded_payment)
            scope.put(ORDER, order.id, refunded_order)

        self._execute("refund_payment", _op)
        logger.info("refunded payment %s", payment_id)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def cancel_order(self, order_id: str) -> None:
        """
        Cancel a placed or paid order and restore its stock exactly once.

        A pending payment on the order is marked failed in the same scope.

        Raises:
            InvalidTransition: If the order is not placed or paid (including
                an order that is already cancelled)
        """

        def _op(scope: Scope) -> None:
            order = get_for_update(scope, ORDER, order_id)
            cancelled = transition(ORDER_LIFECYCLE, order, ORDER_CANCELLED)
            # newest committed state: a payment recorded while this scope waited
            # for the order must not be missed
            payment = _payment_for_order(scope, order_id, for_update=True)
            if payment is not None:
                payment = get_for_update(scope, PAYMENT, payment.id)
            if payment is not None and payment.status == PAYMENT_PENDING:
                scope.put(PAYMENT, payment.id, transition(PAYMENT_LIFECYCLE, payment, PAYMENT_FAILED))
            now = self.clock()
            for item in order_items(scope, order_id):
                apply_movement(scope, item.product_id, item.quantity, REASON_ADJUSTMENT, order_id, now=now)
            scope.put(ORDER, order_id, cancelled)

        self._execute("cancel_order", _op)
        logger.info("cancelled order %s", order_id)

    # =========================================================================
    # SHIPMENTS
    # =========================================================================

    def dispatch_shipment(self, order_id: str, carrier: str, tracking_no: Optional[str] = None) -> str:
        """
        Ship a paid order: shipment pending -> shipped and order paid -> shipped.

        Reuses an existing pending shipment for the order, otherwise creates one.
        """

        def _op(scope: Scope) -> str:
            order = get_for_update(scope, ORDER, order_id)
            shipped_order = transition(ORDER_LIFECYCLE, order, ORDER_SHIPPED)
            now = self.clock()
            shipment = _shipment_for_order(scope, order_id, for_update=True)
            if shipment is not None:
                shipment = get_for_update(scope, SHIPMENT, shipment.id)
            else:
                shipment = Shipment(
                    id=new_id(),
                    order_id=order_id,
                    status=SHIPMENT_PENDING,
                    created_at=now,
                )
            shipped = transition(
                SHIPMENT_LIFECYCLE, shipment, SHIPMENT_SHIPPED,
                carrier=carrier,
                tracking_no=tracking_no if tracking_no is not None else shipment.tracking_no,
                shipped_at=now,
            )
            ensure_valid(scope, SHIPMENT, shipped)
            scope.put(SHIPMENT, shipped.id, shipped)
            scope.put(ORDER, order_id, shipped_order)
            return shipped.id

        shipment_id = self._execute("dispatch_shipment", _op)
        logger.info("dispatched shipment %s for order %s via %s", shipment_id, order_id, carrier)
        return shipment_id

    def deliver_shipment(self, order_id: str) -> None:
        """Shipment shipped -> delivered; the order stays shipped."""

        def _op(scope: Scope) -> None:
            shipment = self._require_shipment(scope, order_id)
            delivered = transition(SHIPMENT_LIFECYCLE, shipment, SHIPMENT_DELIVERED, delivered_at=self.clock())
            scope.put(SHIPMENT, shipment.id, delivered)

        self._execute("deliver_shipment", _op)
        logger.info("delivered shipment for order %s", order_id)

    def return_shipment(self, order_id: str) -> None:
        """Shipment shipped -> returned; every item is restocked with a return movement."""

        def _op(scope: Scope) -> None:
            shipment = self._require_shipment(scope, order_id)
            returned = transition(SHIPMENT_LIFECYCLE, shipment, SHIPMENT_RETURNED)
            now = self.clock()
            for item in order_items(scope, order_id):
                apply_movement(scope, item.product_id, item.quantity, REASON_RETURN, order_id, now=now)
            scope.put(SHIPMENT, shipment.id, returned)

        self._execute("return_shipment", _op)
        logger.info("returned shipment for order %s", order_id)

    @staticmethod
    def _lock_payment(scope: Scope, payment_id: str) -> tuple[Order, Payment]:
        """Locked reads of a payment and its order, order first."""
        order_id = scope.get(PAYMENT, payment_id).order_id
        order = get_for_update(scope, ORDER, order_id)
        return order, get_for_update(scope, PAYMENT, payment_id)

    @staticmethod
    def _require_shipment(scope: Scope, order_id: str) -> Shipment:
        get_for_update(scope, ORDER, order_id)
        shipment = _shipment_for_order(scope, order_id, for_update=True)
        if shipment is None:
            raise InvalidReference(SHIPMENT, "order_id", f"order {order_id!r} has no shipment")
        return get_for_update(scope, SHIPMENT, shipment.id)

    # =========================================================================
    # STOCK
    # =========================================================================

    def adjust_stock(self, product_id: str, delta: int, reason: str) -> str:
        """
        Non-order stock movement (purchase, manual adjustment, return).

        Raises:
            InvalidEnumValue: If reason is `sale` or unknown
            InsufficientStock: If the adjustment would take on_hand below zero
        """
        if reason == REASON_SALE or reason not in MOVEMENT_REASONS:
            raise InvalidEnumValue(
                INVENTORY_MOVEMENT, "reason", f"{reason!r} is not allowed for direct stock adjustments"
            )

        def _op(scope: Scope) -> str:
            movement = apply_movement(scope, product_id, delta, reason, now=self.clock())
            return movement.id

        movement_id = self._execute("adjust_stock", _op)
        logger.info("adjusted stock for product %s by %+d (%s)", product_id, delta, reason)
        return movement_id

    # =========================================================================
    # READS
    # =========================================================================

    def get_order(self, order_id: str) -> Order:
        return self._read(lambda scope: scope.get(ORDER, order_id))

    def get_order_items(self, order_id: str) -> list[OrderItem]:
        def _op(scope: Scope) -> list[OrderItem]:
            scope.get(ORDER, order_id)
            return order_items(scope, order_id)

        return self._read(_op)

    def get_payment(self, payment_id: str) -> Payment:
        return self._read(lambda scope: scope.get(PAYMENT, payment_id))

    def get_shipment(self, order_id: str) -> Optional[Shipment]:
        return self._read(lambda scope: _shipment_for_order(scope, order_id))

    def order_total(self, order_id: str) -> Decimal:
        def _op(scope: Scope) -> Decimal:
            scope.get(ORDER, order_id)
            return calculate_order_total(scope, order_id)

        return self._read(_op)
