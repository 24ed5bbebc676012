# Overview: Seller shipping updates, seller cancellations and the buyer tracking view.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Order, Payment
from ..validation import NotFoundError, ValidationError
from . import notification_service, order_state, stock_service
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import get_order_history
from .order_state import (
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_DELIVERED,
    ORDER_OUT_FOR_DELIVERY,
    ORDER_PROCESSING,
    ORDER_READY_TO_SHIP,
    ORDER_SHIPPED,
    PAY_REFUNDED,
    REFUNDABLE_STATUSES,
    is_awaiting_payment,
)
from .reconciliation_service import SETTLED_VIA_CANCELLATION, cancel_unpaid_order


SHIPPING_STATUSES = (
    ORDER_PROCESSING,
    ORDER_READY_TO_SHIP,
    ORDER_SHIPPED,
    ORDER_OUT_FOR_DELIVERY,
    ORDER_DELIVERED,
    ORDER_COMPLETED,
)

_STATUS_LABELS = {
    ORDER_PROCESSING: "being processed",
    ORDER_READY_TO_SHIP: "ready to ship",
    ORDER_SHIPPED: "shipped",
    ORDER_OUT_FOR_DELIVERY: "out for delivery",
    ORDER_DELIVERED: "delivered",
    ORDER_COMPLETED: "completed",
}


def _locked_seller_order(order_id: int, seller_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None or order.seller_id != seller_id:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def update_shipping(
    order_id: int,
    seller_id: int,
    *,
    status: str,
    tracking_number: str | None = None,
    courier_name: str | None = None,
    notes: str | None = None,
) -> Order:
    """
    Move a paid order along the shipping pipeline.

    Only paid orders move; the transition table rejects skipping back or
    shipping an unpaid order.

    Raises:
        ValidationError: status is not a shipping status, or shipped without tracking
        NotFoundError: order unknown or not this seller's
        TransitionError: move not allowed from the current status
    """
    if status not in SHIPPING_STATUSES:
        raise ValidationError(f"Invalid shipping status '{status}'")
    notifications: list[int] = []

    def _op():
        notifications.clear()
        order = _locked_seller_order(order_id, seller_id)

        if tracking_number:
            order.tracking_number = tracking_number
        if courier_name:
            order.courier_name = courier_name
        if notes:
            order.seller_notes = notes
        if status == ORDER_SHIPPED and not order.tracking_number:
            raise ValidationError("tracking_number is required to mark an order shipped")

        description = f"Order is now {_STATUS_LABELS[status]}."
        if status == ORDER_SHIPPED:
            description = f"Shipped via {order.courier_name or 'courier'}, tracking {order.tracking_number}."
        order_state.transition(
            order,
            status=status,
            description=description,
            updated_by="seller",
            location="Seller Dashboard",
        )
        notifications.append(notification_service.enqueue_for_order(
            "shipping_update_buyer",
            order,
            order.buyer_email,
            status_label=_STATUS_LABELS[status],
            courier_name=order.courier_name,
            tracking_number=order.tracking_number,
        ).id)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s moved to %s by seller %s", order_id, status, seller_id)
    notification_service.dispatch(notifications)
    return order


def cancel_order(order_id: int, seller_id: int, *, reason: str) -> Order:
    """
    Seller cancellation.

    - Unpaid orders: cancelled, hold released, payment failed.
    - Paid, not yet shipped: cancelled with payment_status refunded and the
      committed units returned to stock.

    Raises:
        NotFoundError: order unknown or not this seller's
        TransitionError: order already shipped, terminal, or under receipt review
    """
    if not reason:
        raise ValidationError("reason is required")
    notifications: list[int] = []

    def _op():
        notifications.clear()
        order = db.session.get(Order, order_id)
        if order is None or order.seller_id != seller_id:
            raise NotFoundError(f"Order {order_id} not found")
        if order.payment_id:
            lock_for_update(db.session.query(Payment).filter_by(id=order.payment_id)).one()
        order = _locked_seller_order(order_id, seller_id)

        if is_awaiting_payment(order):
            if order.payment_status == order_state.PAY_PENDING_REVIEW:
                raise order_state.TransitionError(
                    f"Order {order_id} has a receipt awaiting review; approve or reject it first"
                )
            cancel_unpaid_order(
                order,
                reason=f"Cancelled by seller: {reason}",
                updated_by="seller",
                location="Seller Dashboard",
                settled_via=SETTLED_VIA_CANCELLATION,
                notifications=notifications,
            )
        elif order.status in REFUNDABLE_STATUSES:
            stock_service.restock_order(order)
            order_state.transition(
                order,
                status=ORDER_CANCELLED,
                payment_status=PAY_REFUNDED,
                description=f"Cancelled by seller after payment; refund due. Reason: {reason}",
                updated_by="seller",
                location="Seller Dashboard",
            )
            notifications.append(notification_service.enqueue_for_order(
                "order_cancelled_buyer", order, order.buyer_email,
                reason=f"{reason} A refund will be issued.",
            ).id)
        else:
            raise order_state.TransitionError(
                f"Order {order_id} is {order.status} and can no longer be cancelled"
            )

        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order %s cancelled by seller %s", order_id, seller_id)
    notification_service.dispatch(notifications)
    return order


def get_tracking(order_id: int, buyer_email: str | None = None) -> dict:
    """
    Buyer tracking view: the order and its status history.

    When buyer_email is given it must match the order (guest lookup).
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if buyer_email is not None and order.buyer_email.lower() != buyer_email.strip().lower():
        raise NotFoundError(f"Order {order_id} not found")
    data = order.to_dict()
    data["status_history"] = [h.to_dict() for h in get_order_history(order_id)]
    return data


def list_seller_orders(seller_id: int, status: str | None = None) -> list[Order]:
    query = db.session.query(Order).filter_by(seller_id=seller_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Order.id.desc()).all()
