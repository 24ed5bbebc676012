# Overview: Reconciliation engine; applies gateway events, receipt decisions and expiry to orders exactly once.

"""
Reconciliation Engine

WHY: Gateway callbacks arrive late, twice, or out of order, a seller may be
reviewing a receipt for the same order at the same time, and unpaid orders
must give their stock back when the payment window closes. Every one of
those triggers funnels through this module so an order is settled once.

SERIALIZATION:
- Every operation locks the rows it decides on (payment, then orders, then
  products) and re-reads them inside its own retried transaction.
- Every settlement writes the Payment and Order rows, so two racing writers
  collide on version_id and the loser retries, observing the winner's state.

IDEMPOTENCY:
- Payment.status is pending until the first terminal outcome: a paid event
  or receipt approval completes it; expiry, cancellation or a rejected
  receipt fails it. A gateway "failed" is only recorded on the orders, so
  the buyer can still pay. A later event with the same outcome is a no-op;
  a contradictory one is recorded as an anomaly (once per distinct report)
  and flags the payment for review. Nothing is overwritten.
- Receipt decisions go through receipt_service.mark_reviewed(), which
  refuses anything but a pending receipt.

SIDE EFFECTS: notifications are enqueued in the transaction and dispatched
after commit; delivery never affects the outcome returned here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app

from ..extensions import db
from ..models import Order, Payment, Product, Receipt
from ..time_utils import utcnow
from ..validation import NotFoundError
from . import notification_service, order_state, receipt_service, stock_service
from .concurrency import lock_for_update, run_with_retry
from .gateways import PaymentEvent
from .ledger_service import (
    ANOMALY_AMOUNT_MISMATCH,
    ANOMALY_CONFLICTING_OUTCOME,
    ANOMALY_LATE_PAYMENT,
    append_status_history,
    find_open_anomaly,
    generate_payment_reference,
    record_anomaly,
)
from .notification_templates import format_money
from .order_state import (
    ORDER_CANCELLED,
    ORDER_PAID,
    ORDER_PAYMENT_FAILED,
    ORDER_PENDING,
    PAY_COMPLETED,
    PAY_FAILED,
    PAY_PENDING,
    PAY_PENDING_REVIEW,
    PAY_REJECTED,
    is_awaiting_payment,
)


class PaymentNotFound(NotFoundError):
    """No payment matches the event's external id or reference."""


PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"

SETTLED_VIA_RECEIPT = "receipt"
SETTLED_VIA_EXPIRY = "expiry"
SETTLED_VIA_CANCELLATION = "cancellation"

RESULT_APPLIED = "applied"
RESULT_DUPLICATE = "duplicate"
RESULT_ANOMALY = "anomaly"
RESULT_SUPERSEDED = "superseded"

# Statuses from which expiry cancels an order
EXPIRABLE_PAYMENT_STATUSES = (PAY_PENDING, PAY_FAILED, PAY_REJECTED)

QR_PAYMENT_METHOD = "qr_payment"


# =============================================================================
# SHARED HELPERS (run inside the caller's transaction)
# =============================================================================

def _lock_payment(payment_id: int) -> Payment:
    return lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).one()


def _lock_orders(payment: Payment) -> list[Order]:
    return lock_for_update(
        db.session.query(Order).filter_by(payment_id=payment.id).order_by(Order.id)
    ).all()


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _admin_email() -> str | None:
    return current_app.config.get("ADMIN_EMAIL") or None


def _flag(payment: Payment, notifications: list[int], *, kind: str, detail: str, event: PaymentEvent | None = None):
    report = {
        "provider": event.provider if event else None,
        "external_id": event.external_id if event else None,
        "reported_outcome": event.outcome if event else None,
        "reported_amount_cents": event.amount_cents if event else None,
    }
    # Re-deliveries of the same report are already queued for review
    if find_open_anomaly(payment, kind=kind, **report) is not None:
        current_app.logger.info("Repeated %s report for payment %s ignored", kind, payment.reference)
        return
    record_anomaly(payment, kind=kind, detail=detail, **report)
    admin = _admin_email()
    if admin:
        notifications.append(notification_service.enqueue(
            "reconciliation_anomaly_admin",
            admin,
            {"reference": payment.reference, "kind": kind, "detail": detail},
        ).id)


def _settle_order_paid(
    order: Order,
    *,
    paid_at: datetime,
    description: str,
    updated_by: str,
    location: str,
    notifications: list[int],
) -> None:
    """Commit stock once, mark the order paid, queue the paid emails."""
    stock_service.commit_order_stock(order)
    order.paid_at = paid_at
    order_state.transition(
        order,
        status=ORDER_PAID,
        payment_status=PAY_COMPLETED,
        description=description,
        updated_by=updated_by,
        location=location,
    )
    notifications.append(notification_service.enqueue_for_order(
        "payment_confirmed_buyer", order, order.buyer_email
    ).id)
    notifications.append(notification_service.enqueue_for_order(
        "payment_confirmed_seller", order, order.seller.email
    ).id)
    admin = _admin_email()
    if admin:
        notifications.append(notification_service.enqueue_for_order(
            "payment_confirmed_admin", order, admin
        ).id)


def cancel_unpaid_order(
    order: Order,
    *,
    reason: str,
    updated_by: str,
    location: str,
    settled_via: str,
    notifications: list[int],
) -> None:
    """
    Cancel an order that never got paid and release its hold.

    The order's Payment is failed once none of its orders still awaits
    payment. Caller holds the payment and order locks.
    """
    stock_service.release_order_stock(order)
    order_state.transition(
        order,
        status=ORDER_CANCELLED,
        payment_status=PAY_FAILED,
        description=reason,
        updated_by=updated_by,
        location=location,
    )
    payment = order.payment
    if payment is not None and payment.status == PAYMENT_PENDING:
        if not any(is_awaiting_payment(o) for o in payment.orders if o.id != order.id):
            payment.status = PAYMENT_FAILED
            payment.settled_via = settled_via
    notifications.append(notification_service.enqueue_for_order(
        "order_cancelled_buyer", order, order.buyer_email, reason=reason
    ).id)


def mark_under_review(order: Order, receipt: Receipt) -> list[Order]:
    """
    Suspend the payment window while a receipt is reviewed.

    Every order of the receipt's payment that awaits payment moves to
    payment_status pending_review. Runs inside the upload transaction.

    Raises:
        TransitionError: the order no longer awaits payment
    """
    orders = order.payment.orders if order.payment else [order]
    if not is_awaiting_payment(order):
        raise order_state.TransitionError(
            f"Order {order.id} is {order.status}/{order.payment_status} and cannot take a receipt"
        )
    moved = []
    for o in orders:
        if not is_awaiting_payment(o) or o.payment_status == PAY_PENDING_REVIEW:
            continue
        order_state.transition(
            o,
            status=ORDER_PENDING,
            payment_status=PAY_PENDING_REVIEW,
            description=f"Payment receipt #{receipt.id} uploaded; awaiting seller review.",
            updated_by="buyer",
            location="Receipt Upload",
        )
        moved.append(o)
    return moved


# =============================================================================
# GATEWAY EVENTS
# =============================================================================

def _find_payment(event: PaymentEvent) -> Payment:
    """
    Locate and lock the payment an event refers to.

    external_id (scoped to the provider) wins; reference is the fallback for
    providers that only echo our reference.
    """
    payment = None
    if event.external_id:
        payment = lock_for_update(db.session.query(Payment).filter_by(
            payment_method=event.provider, external_id=event.external_id
        )).first()
    if payment is None and event.reference:
        payment = lock_for_update(db.session.query(Payment).filter_by(
            reference=event.reference
        )).first()
        if payment is not None:
            if payment.payment_method != event.provider:
                payment = None
            elif payment.external_id and event.external_id and payment.external_id != event.external_id:
                payment = None
    if payment is None:
        raise PaymentNotFound(
            f"No {event.provider} payment for external_id={event.external_id!r} reference={event.reference!r}"
        )
    return payment


def _apply_terminal(payment: Payment, event: PaymentEvent, notifications: list[int]) -> str:
    if payment.status == (PAYMENT_COMPLETED if event.paid else PAYMENT_FAILED):
        return RESULT_DUPLICATE

    if event.paid and payment.settled_via in (SETTLED_VIA_EXPIRY, SETTLED_VIA_CANCELLATION, SETTLED_VIA_RECEIPT):
        kind = ANOMALY_LATE_PAYMENT
        detail = (
            f"{event.provider} reported {format_money(event.amount_cents, payment.currency)} paid "
            f"after the payment was failed by {payment.settled_via}; refund or re-open manually"
        )
    else:
        kind = ANOMALY_CONFLICTING_OUTCOME
        detail = (
            f"{event.provider} reported '{event.outcome}' for a payment already {payment.status} "
            f"(settled via {payment.settled_via})"
        )
    _flag(payment, notifications, kind=kind, detail=detail, event=event)
    return RESULT_ANOMALY


def _apply_paid(payment: Payment, event: PaymentEvent, notifications: list[int]) -> str:
    if event.amount_cents is not None and event.amount_cents != payment.amount_cents:
        _flag(
            payment,
            notifications,
            kind=ANOMALY_AMOUNT_MISMATCH,
            detail=(
                f"{event.provider} reported {format_money(event.amount_cents, payment.currency)} paid, "
                f"{format_money(payment.amount_cents, payment.currency)} due"
            ),
            event=event,
        )
        return RESULT_ANOMALY

    orders = _lock_orders(payment)
    amount = format_money(payment.amount_cents, payment.currency)
    not_awaiting = []
    for order in orders:
        if not is_awaiting_payment(order):
            not_awaiting.append(order)
            continue
        _settle_order_paid(
            order,
            paid_at=event.occurred_at,
            description=f"Payment of {amount} received via {event.provider}.",
            updated_by=event.provider,
            location="Payment Gateway",
            notifications=notifications,
        )

    payment.status = PAYMENT_COMPLETED
    payment.paid_amount_cents = event.amount_cents if event.amount_cents is not None else payment.amount_cents
    payment.paid_at = event.occurred_at
    payment.settled_via = event.provider

    if not_awaiting:
        _flag(
            payment,
            notifications,
            kind=ANOMALY_LATE_PAYMENT,
            detail="Paid while order(s) {} were already {}".format(
                ", ".join(f"#{o.id}" for o in not_awaiting),
                ", ".join(sorted({o.status for o in not_awaiting})),
            ),
            event=event,
        )
    return RESULT_APPLIED


def _apply_failed(payment: Payment, event: PaymentEvent, notifications: list[int]) -> str:
    """
    Record a failed attempt on the awaiting orders.

    The Payment stays pending: the buyer may retry the same bill or upload a
    receipt until the window closes. It only fails through expiry,
    cancellation or a rejected receipt.
    """
    moved = already_failed = 0
    for order in _lock_orders(payment):
        if order.status == ORDER_PENDING and order.payment_status == PAY_FAILED:
            already_failed += 1
            continue
        # A receipt under review keeps its own state; the seller decides it
        if order.status != ORDER_PENDING or order.payment_status != PAY_PENDING:
            continue
        order_state.transition(
            order,
            status=ORDER_PENDING,
            payment_status=PAY_FAILED,
            description=f"Payment failed via {event.provider}. The buyer may retry before the window closes.",
            updated_by=event.provider,
            location="Payment Gateway",
        )
        notifications.append(notification_service.enqueue_for_order(
            "payment_failed_buyer", order, order.buyer_email
        ).id)
        moved += 1
    return RESULT_DUPLICATE if already_failed and not moved else RESULT_APPLIED


def apply_payment_event(event: PaymentEvent) -> dict:
    """
    Apply a verified gateway event to its payment and orders, at most once.

    Args:
        event: Parsed, signature-checked PaymentEvent

    Returns:
        {"result": applied|duplicate|anomaly, "payment": {...}}

    Raises:
        PaymentNotFound: no payment matches (no state change)
    """
    notifications: list[int] = []

    def _op():
        notifications.clear()
        payment = _find_payment(event)

        if payment.status != PAYMENT_PENDING:
            result = _apply_terminal(payment, event, notifications)
        else:
            if payment.external_id is None and event.external_id:
                payment.external_id = event.external_id
            if event.paid:
                result = _apply_paid(payment, event, notifications)
            else:
                result = _apply_failed(payment, event, notifications)

        db.session.commit()
        return {"result": result, "payment": payment.to_dict()}

    outcome = run_with_retry(_op)
    current_app.logger.info(
        "Gateway %s event %s/%s -> %s (payment %s)",
        event.provider, event.external_id, event.outcome, outcome["result"], outcome["payment"]["reference"],
    )
    notification_service.dispatch(notifications)
    return outcome


# =============================================================================
# RECEIPT DECISIONS
# =============================================================================

def _synthesize_qr_order(receipt: Receipt, notifications: list[int]) -> Order:
    """Create the paid order and payment for an approved QR receipt."""
    product = db.session.get(Product, receipt.product_id)
    if product is None:
        raise NotFoundError(f"Product {receipt.product_id} not found")
    now = utcnow()

    payment = Payment(
        reference=generate_payment_reference(),
        amount_cents=receipt.amount_cents,
        currency=current_app.config["CURRENCY"],
        payment_method=QR_PAYMENT_METHOD,
        status=PAYMENT_COMPLETED,
        paid_amount_cents=receipt.amount_cents,
        paid_at=now,
        settled_via=SETTLED_VIA_RECEIPT,
    )
    db.session.add(payment)
    db.session.flush()

    order = Order(
        product_id=product.id,
        seller_id=receipt.seller_id,
        payment_id=payment.id,
        buyer_id=receipt.buyer_id,
        buyer_name=receipt.buyer_name,
        buyer_email=receipt.buyer_email,
        phone=receipt.buyer_phone or "",
        shipping_address=receipt.shipping_address or "",
        quantity=receipt.quantity,
        unit_price_cents=product.price_cents,
        shipping_cost_cents=0,
        total_amount_cents=receipt.amount_cents,
        status=ORDER_PENDING,
        payment_status=PAY_PENDING,
        payment_method=QR_PAYMENT_METHOD,
        stock_state=stock_service.STOCK_NONE,
    )
    db.session.add(order)
    db.session.flush()
    append_status_history(
        order,
        description=f"Order created from QR payment receipt #{receipt.id}.",
        updated_by="system",
        location="Receipt Review",
    )
    receipt.order_id = order.id

    _settle_order_paid(
        order,
        paid_at=now,
        description=f"QR payment of {format_money(receipt.amount_cents, payment.currency)} approved by seller.",
        updated_by="seller",
        location="Receipt Review",
        notifications=notifications,
    )
    return order


def _approve(receipt: Receipt, notifications: list[int]) -> tuple[str, Optional[Order]]:
    if receipt.order_id is None:
        return RESULT_APPLIED, _synthesize_qr_order(receipt, notifications)

    order = db.session.get(Order, receipt.order_id)
    payment = _lock_payment(order.payment_id) if order.payment_id else None
    orders = _lock_orders(payment) if payment else [_lock_order(order.id)]
    order = next(o for o in orders if o.id == receipt.order_id)

    if not is_awaiting_payment(order):
        return RESULT_SUPERSEDED, order

    now = utcnow()
    for o in orders:
        if not is_awaiting_payment(o):
            continue
        _settle_order_paid(
            o,
            paid_at=now,
            description=f"Payment receipt #{receipt.id} approved by seller.",
            updated_by="seller",
            location="Receipt Review",
            notifications=notifications,
        )
    if payment is not None and payment.status == PAYMENT_PENDING:
        payment.status = PAYMENT_COMPLETED
        payment.paid_amount_cents = receipt.amount_cents
        payment.paid_at = now
        payment.settled_via = SETTLED_VIA_RECEIPT
    return RESULT_APPLIED, order


def _reject(receipt: Receipt, notifications: list[int]) -> tuple[str, Optional[Order]]:
    buyer_email = receipt.buyer_email
    if receipt.order_id is None:
        if buyer_email:
            notifications.append(notification_service.enqueue_for_receipt(
                "receipt_rejected_buyer", receipt, buyer_email
            ).id)
        return RESULT_APPLIED, None

    order = db.session.get(Order, receipt.order_id)
    payment = _lock_payment(order.payment_id) if order.payment_id else None
    orders = _lock_orders(payment) if payment else [_lock_order(order.id)]
    order = next(o for o in orders if o.id == receipt.order_id)

    if not is_awaiting_payment(order):
        return RESULT_SUPERSEDED, order

    for o in orders:
        if not is_awaiting_payment(o):
            continue
        stock_service.release_order_stock(o)
        order_state.transition(
            o,
            status=ORDER_PAYMENT_FAILED,
            payment_status=PAY_REJECTED,
            description=f"Payment receipt #{receipt.id} rejected by seller."
            + (f" Notes: {receipt.seller_notes}" if receipt.seller_notes else ""),
            updated_by="seller",
            location="Receipt Review",
        )
    if payment is not None and payment.status == PAYMENT_PENDING:
        payment.status = PAYMENT_FAILED
        payment.settled_via = SETTLED_VIA_RECEIPT
    notifications.append(notification_service.enqueue_for_receipt(
        "receipt_rejected_buyer", receipt, order.buyer_email
    ).id)
    return RESULT_APPLIED, order


def apply_receipt_decision(
    receipt_id: int,
    decision: str,
    *,
    notes: str | None = None,
    seller_id: int | None = None,
    via: str = receipt_service.REVIEWED_VIA_DASHBOARD,
) -> dict:
    """
    Approve or reject a pending receipt. Dashboard and email-link paths both end here.

    Approval settles the linked order (or creates one for a QR receipt) and
    commits stock; rejection fails the order and releases its hold. If the
    order was already resolved by a gateway or expiry, the receipt decision
    is recorded but the order is left alone (result "superseded").

    Args:
        receipt_id: Receipt to decide
        decision: "approved" or "rejected"
        notes: Seller notes shown to the buyer
        seller_id: When given, the receipt must belong to this seller
        via: dashboard or email_link

    Returns:
        {"result": ..., "status": receipt status, "orderId": int | None, "receipt": {...}}

    Raises:
        NotFoundError: unknown receipt (or another seller's)
        ReceiptAlreadyReviewed: receipt is not pending (nothing re-applied)
        InsufficientStock: QR approval with not enough stock (nothing changed)
    """
    notifications: list[int] = []

    def _op():
        notifications.clear()
        receipt = receipt_service.lock_receipt(receipt_id)
        if seller_id is not None and receipt.seller_id != seller_id:
            raise NotFoundError(f"Receipt {receipt_id} not found")

        receipt_service.mark_reviewed(receipt, decision, notes=notes, via=via)

        if decision == receipt_service.RECEIPT_APPROVED:
            result, order = _approve(receipt, notifications)
        else:
            result, order = _reject(receipt, notifications)

        if result == RESULT_APPLIED and decision == receipt_service.RECEIPT_APPROVED:
            notifications.append(notification_service.enqueue_for_receipt(
                "receipt_approved_seller", receipt, receipt.seller.email
            ).id)
        elif result == RESULT_APPLIED:
            notifications.append(notification_service.enqueue_for_receipt(
                "receipt_rejected_seller", receipt, receipt.seller.email
            ).id)

        db.session.commit()
        return {
            "result": result,
            "status": receipt.status,
            "orderId": receipt.order_id,
            "receipt": receipt.to_dict(),
        }

    outcome = run_with_retry(_op)
    current_app.logger.info(
        "Receipt %s %s via %s -> %s (order %s)",
        receipt_id, decision, via, outcome["result"], outcome["orderId"],
    )
    notification_service.dispatch(notifications)
    return outcome


# =============================================================================
# EXPIRY
# =============================================================================

def expire_unpaid_orders(now: datetime | None = None) -> dict:
    """
    Cancel every unpaid order whose payment window has closed.

    Orders under receipt review (pending_review) are skipped until the
    seller decides. Each order runs in its own retried transaction, so one
    failure does not block the rest of the sweep.

    Returns:
        {"expired": [order ids], "skipped": int, "errors": int}
    """
    now = now or utcnow()
    candidate_ids = [
        order_id for (order_id,) in db.session.query(Order.id).filter(
            Order.status == ORDER_PENDING,
            Order.payment_status.in_(EXPIRABLE_PAYMENT_STATUSES),
            Order.expires_at.isnot(None),
            Order.expires_at <= now,
        ).order_by(Order.id).all()
    ]

    summary = {"expired": [], "skipped": 0, "errors": 0}
    for order_id in candidate_ids:
        notifications: list[int] = []

        def _op():
            notifications.clear()
            order = db.session.get(Order, order_id)
            if order.payment_id:
                _lock_payment(order.payment_id)
            order = _lock_order(order_id)
            if (
                order.status != ORDER_PENDING
                or order.payment_status not in EXPIRABLE_PAYMENT_STATUSES
                or order.expires_at is None
                or order.expires_at > now
            ):
                db.session.rollback()
                return False

            cancel_unpaid_order(
                order,
                reason="Payment window expired before payment was received.",
                updated_by="system",
                location="Payment Window",
                settled_via=SETTLED_VIA_EXPIRY,
                notifications=notifications,
            )
            db.session.commit()
            return True

        try:
            expired = run_with_retry(_op)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Expiry of order %s failed", order_id)
            summary["errors"] += 1
            continue

        if expired:
            summary["expired"].append(order_id)
            notification_service.dispatch(notifications)
        else:
            summary["skipped"] += 1

    if summary["expired"]:
        current_app.logger.info("Expired %d unpaid order(s): %s", len(summary["expired"]), summary["expired"])
    return summary
