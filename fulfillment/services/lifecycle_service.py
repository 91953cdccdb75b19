# Overview: Lifecycle state machines for orders, payments and shipments.

"""
Lifecycle Service

================================================================================
ORDER:     cart -> placed -> paid -> shipped
                    |         |
                    +---------+--> cancelled
                              +--> refunded
PAYMENT:   pending -> captured -> refunded
           pending -> failed
SHIPMENT:  pending -> shipped -> delivered
                       shipped -> returned
================================================================================

RULES:
1. Only the listed transitions exist; everything else is InvalidTransition,
   including a transition to the current state.
2. An unknown status value is InvalidEnumValue, not InvalidTransition.
3. Order -> paid / refunded / shipped happen only as side effects of the
   payment / shipment transitions (the coordinator drives both in one scope).
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from ..errors import InvalidEnumValue, InvalidTransition
from ..models import ORDER, PAYMENT, SHIPMENT
from ..models.entities import (
    ORDER_CART, ORDER_PLACED, ORDER_PAID, ORDER_SHIPPED, ORDER_CANCELLED, ORDER_REFUNDED,
    ORDER_STATUSES,
    PAYMENT_PENDING, PAYMENT_CAPTURED, PAYMENT_FAILED, PAYMENT_REFUNDED, PAYMENT_STATUSES,
    SHIPMENT_PENDING, SHIPMENT_SHIPPED, SHIPMENT_DELIVERED, SHIPMENT_RETURNED, SHIPMENT_STATUSES,
)


@dataclass(frozen=True)
class StateMachine:
    name: str
    states: tuple[str, ...]
    transitions: frozenset[tuple[str, str]]

    @property
    def terminal_states(self) -> frozenset[str]:
        sources = {source for source, _ in self.transitions}
        return frozenset(state for state in self.states if state not in sources)

    def validate_status(self, status: str) -> None:
        """
        Raises:
            InvalidEnumValue: If status is not one of this machine's states
        """
        if status not in self.states:
            raise InvalidEnumValue(
                self.name, "status", f"Invalid status '{status}'. Must be one of: {', '.join(self.states)}"
            )

    def can_transition(self, from_status: str, to_status: str) -> bool:
        self.validate_status(from_status)
        self.validate_status(to_status)
        return (from_status, to_status) in self.transitions

    def require_transition(self, from_status: str, to_status: str) -> None:
        if not self.can_transition(from_status, to_status):
            raise InvalidTransition(self.name, from_status, to_status)

    def allowed_from(self, status: str) -> tuple[str, ...]:
        self.validate_status(status)
        return tuple(target for target in self.states if (status, target) in self.transitions)


ORDER_LIFECYCLE = StateMachine(
    name=ORDER,
    states=ORDER_STATUSES,
    transitions=frozenset({
        (ORDER_CART, ORDER_PLACED),
        (ORDER_PLACED, ORDER_PAID),
        (ORDER_PAID, ORDER_SHIPPED),
        (ORDER_PLACED, ORDER_CANCELLED),
        (ORDER_PAID, ORDER_CANCELLED),
        (ORDER_PAID, ORDER_REFUNDED),
    }),
)

PAYMENT_LIFECYCLE = StateMachine(
    name=PAYMENT,
    states=PAYMENT_STATUSES,
    transitions=frozenset({
        (PAYMENT_PENDING, PAYMENT_CAPTURED),
        (PAYMENT_PENDING, PAYMENT_FAILED),
        (PAYMENT_CAPTURED, PAYMENT_REFUNDED),
    }),
)

SHIPMENT_LIFECYCLE = StateMachine(
    name=SHIPMENT,
    states=SHIPMENT_STATUSES,
    transitions=frozenset({
        (SHIPMENT_PENDING, SHIPMENT_SHIPPED),
        (SHIPMENT_SHIPPED, SHIPMENT_DELIVERED),
        (SHIPMENT_SHIPPED, SHIPMENT_RETURNED),
    }),
)

LIFECYCLES = {
    ORDER: ORDER_LIFECYCLE,
    PAYMENT: PAYMENT_LIFECYCLE,
    SHIPMENT: SHIPMENT_LIFECYCLE,
}


def transition(machine: StateMachine, entity, to_status: str, **changes):
    """
    Return a copy of `entity` moved to `to_status`, with any extra field changes.

    Raises:
        InvalidTransition: If the machine has no edge from the current status
        InvalidEnumValue: If either status is unknown
    """
    machine.require_transition(entity.status, to_status)
    return replace(entity, status=to_status, **changes)
