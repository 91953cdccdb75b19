# Overview: Typed failures raised by the store, validators, ledger and coordinator.

"""
Error taxonomy

Every failure a caller can observe from the engine derives from
FulfillmentError. Only Conflict and Timeout are retryable; the coordinator
retries those a bounded number of times and surfaces everything else as-is.
"""

from __future__ import annotations


class FulfillmentError(Exception):
    """Base class for all engine failures."""

    retryable = False


class NotFound(FulfillmentError):
    """Referenced entity is absent."""

    def __init__(self, entity_type: str, key):
        self.entity_type = entity_type
        self.key = key
        super().__init__(f"{entity_type} {key!r} not found")


# =============================================================================
# CONSTRAINT VIOLATIONS
# =============================================================================

class ConstraintViolation(FulfillmentError):
    """A write would break a per-entity invariant."""

    kind = "constraint"

    def __init__(self, entity_type: str, field: str | None, detail: str | None = None):
        self.entity_type = entity_type
        self.field = field
        self.detail = detail
        message = f"{self.kind} on {entity_type}.{field}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DuplicateKey(ConstraintViolation):
    kind = "duplicate_key"


class NonNegativeViolation(ConstraintViolation):
    kind = "non_negative"


class InvalidReference(ConstraintViolation):
    kind = "invalid_reference"


class InvalidEnumValue(ConstraintViolation):
    kind = "invalid_enum_value"


class MissingValue(ConstraintViolation):
    kind = "missing_value"


# =============================================================================
# BUSINESS RULE FAILURES
# =============================================================================

class InvalidTransition(FulfillmentError):
    """State machine rule violated."""

    def __init__(self, machine: str, from_status: str, to_status: str):
        self.machine = machine
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"{machine}: transition {from_status} -> {to_status} is not allowed")


class InsufficientStock(FulfillmentError):
    """A ledger movement would take on_hand below zero."""

    def __init__(self, product_id: str, on_hand: int, delta: int):
        self.product_id = product_id
        self.on_hand = on_hand
        self.delta = delta
        super().__init__(
            f"Insufficient stock for product {product_id}: on_hand={on_hand}, delta={delta}"
        )


class AmountMismatch(FulfillmentError):
    """Payment amount disagrees with the order total."""

    def __init__(self, order_id: str, expected, actual):
        self.order_id = order_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Order {order_id} totals {expected}, payment amount is {actual}")


# =============================================================================
# CONCURRENCY / TRANSACTION FAILURES
# =============================================================================

class Conflict(FulfillmentError):
    """Concurrent write detected at commit."""

    retryable = True


class Timeout(FulfillmentError):
    """A scope could not complete before its deadline."""

    retryable = True


class NoActiveTransaction(FulfillmentError, RuntimeError):
    """Store used outside an open scope. Programming defect, not recoverable."""
