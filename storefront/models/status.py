# storefront/models/status.py
"""
Closed status enumerations and the transition tables that guard them.

Every status change in the engine goes through ``ensure_order_transition`` /
``next_order_status`` or ``payment_supersedes``. Stale or out-of-order events
are rejected here instead of by ad-hoc string comparisons at the call sites.
"""

import enum
from typing import Optional

from storefront.core.exceptions import ValidationError


class CodeType(str, enum.Enum):
    INFLUENCER = "influencer"
    LEAD_RESERVATION = "lead_reservation"


class AmountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REFUNDED = "refunded"


class CommissionStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


# --- Order ---

ALLOWED_ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.EXPIRED,
    }),
    OrderStatus.AWAITING_PAYMENT: frozenset({
        OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.EXPIRED,
    }),
    # Refund is the only way out of PAID.
    OrderStatus.PAID: frozenset({OrderStatus.CANCELLED}),
    # A later attempt approved after a rejected one; the reconciler refuses it for refunded orders
    OrderStatus.CANCELLED: frozenset({OrderStatus.PAID}),
    OrderStatus.EXPIRED: frozenset(),
}

# (current order status, incoming payment status) -> target order status
_ORDER_TARGETS: dict[tuple[OrderStatus, PaymentStatus], OrderStatus] = {
    (OrderStatus.PENDING, PaymentStatus.PENDING): OrderStatus.AWAITING_PAYMENT,
    (OrderStatus.PENDING, PaymentStatus.APPROVED): OrderStatus.PAID,
    (OrderStatus.PENDING, PaymentStatus.REJECTED): OrderStatus.CANCELLED,
    (OrderStatus.PENDING, PaymentStatus.REFUNDED): OrderStatus.CANCELLED,
    (OrderStatus.AWAITING_PAYMENT, PaymentStatus.APPROVED): OrderStatus.PAID,
    (OrderStatus.AWAITING_PAYMENT, PaymentStatus.REJECTED): OrderStatus.CANCELLED,
    (OrderStatus.AWAITING_PAYMENT, PaymentStatus.REFUNDED): OrderStatus.CANCELLED,
    (OrderStatus.PAID, PaymentStatus.REFUNDED): OrderStatus.CANCELLED,
    (OrderStatus.CANCELLED, PaymentStatus.APPROVED): OrderStatus.PAID,
}


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_ORDER_TRANSITIONS[current]


def ensure_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition_order(current, target):
        raise ValidationError(
            f"Order transition {current.value} -> {target.value} is not allowed",
            current=current.value, target=target.value,
        )


def next_order_status(current: OrderStatus, payment_status: PaymentStatus) -> Optional[OrderStatus]:
    """Order status a payment event should drive to, or None if the order stays put."""
    target = _ORDER_TARGETS.get((current, payment_status))
    if target is not None:
        ensure_order_transition(current, target)
    return target


# --- Payment ---

PAYMENT_PRECEDENCE: dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.APPROVED: 1,
    PaymentStatus.REJECTED: 1,
    PaymentStatus.REFUNDED: 2,
}


def payment_supersedes(current: PaymentStatus, incoming: PaymentStatus) -> bool:
    """True only when ``incoming`` is strictly more advanced than ``current``."""
    return PAYMENT_PRECEDENCE[incoming] > PAYMENT_PRECEDENCE[current]


def statuses_below(incoming: PaymentStatus) -> list[PaymentStatus]:
    """Statuses a payment row may be in for ``incoming`` to be applied."""
    rank = PAYMENT_PRECEDENCE[incoming]
    return [status for status, value in PAYMENT_PRECEDENCE.items() if value < rank]
