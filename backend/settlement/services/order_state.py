# Overview: Order state machine; the single place where status and payment_status change.

"""
Order State Machine

================================================================================
PURPOSE: Keep Order.status and Order.payment_status consistent
================================================================================

Both fields move together through transition(), which validates the move,
applies it, and appends one status-history row in the same transaction.

ORDER STATUS:
    pending -> paid | processing -> ready_to_ship -> shipped
            -> out_for_delivery -> delivered -> completed
    pending -> cancelled | payment_failed

VALID (status, payment_status) PAIRS:
    pending                      : pending, pending_review, failed
    paid .. completed            : completed
    cancelled                    : failed, refunded
    payment_failed               : rejected

Terminal: completed, cancelled, payment_failed.
================================================================================
"""

from __future__ import annotations

from ..models import Order
from ..validation import ConflictError, ValidationError
from .ledger_service import append_status_history


# Order status
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_PROCESSING = "processing"
ORDER_READY_TO_SHIP = "ready_to_ship"
ORDER_SHIPPED = "shipped"
ORDER_OUT_FOR_DELIVERY = "out_for_delivery"
ORDER_DELIVERED = "delivered"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"
ORDER_PAYMENT_FAILED = "payment_failed"

# Order payment status
PAY_PENDING = "pending"
PAY_PENDING_REVIEW = "pending_review"
PAY_COMPLETED = "completed"
PAY_FAILED = "failed"
PAY_REJECTED = "rejected"
PAY_REFUNDED = "refunded"

VALID_ORDER_STATUSES = {
    ORDER_PENDING, ORDER_PAID, ORDER_PROCESSING, ORDER_READY_TO_SHIP, ORDER_SHIPPED,
    ORDER_OUT_FOR_DELIVERY, ORDER_DELIVERED, ORDER_COMPLETED, ORDER_CANCELLED,
    ORDER_PAYMENT_FAILED,
}
VALID_PAYMENT_STATUSES = {
    PAY_PENDING, PAY_PENDING_REVIEW, PAY_COMPLETED, PAY_FAILED, PAY_REJECTED, PAY_REFUNDED,
}

TERMINAL_STATUSES = {ORDER_COMPLETED, ORDER_CANCELLED, ORDER_PAYMENT_FAILED}
PAID_STATUSES = {
    ORDER_PAID, ORDER_PROCESSING, ORDER_READY_TO_SHIP, ORDER_SHIPPED,
    ORDER_OUT_FOR_DELIVERY, ORDER_DELIVERED, ORDER_COMPLETED,
}

# Statuses a seller may still cancel (with refund) before the parcel leaves
REFUNDABLE_STATUSES = {ORDER_PAID, ORDER_PROCESSING, ORDER_READY_TO_SHIP}

# Payment statuses in which a pending order still accepts a payment resolution
AWAITING_PAYMENT_STATUSES = {PAY_PENDING, PAY_PENDING_REVIEW, PAY_FAILED}

_STATUS_TRANSITIONS = {
    ORDER_PENDING: {ORDER_PENDING, ORDER_PAID, ORDER_PROCESSING, ORDER_CANCELLED, ORDER_PAYMENT_FAILED},
    ORDER_PAID: {ORDER_PROCESSING, ORDER_READY_TO_SHIP, ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_PROCESSING: {ORDER_READY_TO_SHIP, ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_READY_TO_SHIP: {ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_SHIPPED: {ORDER_OUT_FOR_DELIVERY, ORDER_DELIVERED},
    ORDER_OUT_FOR_DELIVERY: {ORDER_DELIVERED},
    ORDER_DELIVERED: {ORDER_COMPLETED},
    ORDER_COMPLETED: set(),
    ORDER_CANCELLED: set(),
    ORDER_PAYMENT_FAILED: set(),
}

_VALID_PAIRS = {
    ORDER_PENDING: {PAY_PENDING, PAY_PENDING_REVIEW, PAY_FAILED},
    ORDER_CANCELLED: {PAY_FAILED, PAY_REFUNDED},
    ORDER_PAYMENT_FAILED: {PAY_REJECTED},
    **{status: {PAY_COMPLETED} for status in PAID_STATUSES},
}


class TransitionError(ConflictError):
    """Raised when an order cannot make the requested move."""


def is_awaiting_payment(order: Order) -> bool:
    return order.status == ORDER_PENDING and order.payment_status in AWAITING_PAYMENT_STATUSES


def can_transition(from_status: str, to_status: str) -> bool:
    if from_status not in VALID_ORDER_STATUSES or to_status not in VALID_ORDER_STATUSES:
        return False
    return to_status in _STATUS_TRANSITIONS[from_status]


def transition(
    order: Order,
    *,
    status: str,
    payment_status: str | None = None,
    description: str,
    updated_by: str,
    location: str | None = None,
) -> Order:
    """
    Move an order to (status, payment_status) and record it.

    Args:
        order: Order loaded (and locked) by the caller
        status: Target order status
        payment_status: Target payment status (default: unchanged)
        description: Human-readable history line
        updated_by: system, seller, buyer, or a gateway name
        location: Where the change originated (Payment Gateway, Seller Dashboard, ...)

    Raises:
        ValidationError: Unknown status values
        TransitionError: Move not allowed from the current state
    """
    target_payment = payment_status or order.payment_status

    if status not in VALID_ORDER_STATUSES:
        raise ValidationError(f"Invalid order status '{status}'")
    if target_payment not in VALID_PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status '{target_payment}'")

    if (order.status, order.payment_status) == (status, target_payment):
        raise TransitionError(f"Order {order.id} is already {status}/{target_payment}")

    if not can_transition(order.status, status):
        raise TransitionError(
            f"Cannot move order {order.id} from '{order.status}' to '{status}'"
        )

    if target_payment not in _VALID_PAIRS[status]:
        raise TransitionError(
            f"Payment status '{target_payment}' is not valid for order status '{status}'"
        )

    order.status = status
    order.payment_status = target_payment
    append_status_history(order, description=description, updated_by=updated_by, location=location)
    return order
