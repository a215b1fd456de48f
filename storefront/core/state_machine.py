"""
Payment intent and order state machines.

PaymentIntent:
    pending -> confirming -> completed
    pending -> completed            (processors that skip confirming)
    pending|confirming -> failed|expired
    completed -> refunded

Order:
    new -> processing -> confirmed
    new|processing -> cancelled
"""
from enum import Enum
from typing import Dict, FrozenSet

from storefront.core.exceptions import IllegalTransition


class PaymentStatus(str, Enum):
    """Canonical payment intent status, shared by every gateway."""

    PENDING = "pending"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    """Order lifecycle status."""

    NEW = "new"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.CONFIRMING,
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.EXPIRED,
        }
    ),
    PaymentStatus.CONFIRMING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.EXPIRED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.NEW: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ABSORBING_PAYMENT_STATES = frozenset(
    {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
        PaymentStatus.REFUNDED,
    }
)


def is_absorbing(status: PaymentStatus | str) -> bool:
    """True once a payment intent has reached a terminal outcome."""
    return PaymentStatus(status) in ABSORBING_PAYMENT_STATES


def can_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def ensure_payment_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    """
    Validate a payment intent transition.

    Returns:
        bool: True if the status changes, False for a same-state no-op

    Raises:
        IllegalTransition: If the transition is not in the table
    """
    current, target = PaymentStatus(current), PaymentStatus(target)
    if current == target:
        return False
    if not can_transition(current, target):
        raise IllegalTransition("payment_intent", current.value, target.value)
    return True


def ensure_order_transition(current: OrderStatus | str, target: OrderStatus | str) -> bool:
    """Order counterpart of ensure_payment_transition."""
    current, target = OrderStatus(current), OrderStatus(target)
    if current == target:
        return False
    if target not in ORDER_TRANSITIONS[current]:
        raise IllegalTransition("order", current.value, target.value)
    return True


def order_status_for(payment_status: PaymentStatus | str) -> OrderStatus:
    """Order status implied by a payment intent status."""
    payment_status = PaymentStatus(payment_status)
    if payment_status == PaymentStatus.PENDING:
        return OrderStatus.NEW
    if payment_status in (PaymentStatus.CONFIRMING, PaymentStatus.COMPLETED):
        return OrderStatus.PROCESSING
    # failed, expired, refunded
    return OrderStatus.CANCELLED
