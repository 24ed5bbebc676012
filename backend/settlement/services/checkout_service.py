# Overview: Checkout; reserves stock, opens a payment window and creates the hosted bill.

"""
Checkout Service

FLOW:
1. Validate buyer and items (same seller, active products, qty >= 1).
2. One transaction: soft-hold every item, create the Payment and one Order
   per item, append the initial history entries.
3. After commit, outside any lock, ask the gateway for a hosted bill, then
   store its external_id and payment_url and queue the order emails.
4. If the gateway fails, a compensating transaction cancels the orders
   through the normal cancellation path and CheckoutError is raised.

manual_receipt checkouts skip step 3; the buyer pays by uploading a receipt.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import Order, Payment, Product
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError
from . import notification_service, stock_service
from .concurrency import lock_for_update, run_with_retry
from .gateways import MANUAL_RECEIPT, BillCreationError, get_adapter
from .ledger_service import append_status_history, generate_payment_reference
from .reconciliation_service import SETTLED_VIA_CANCELLATION, cancel_unpaid_order
from .order_state import is_awaiting_payment


class CheckoutError(RuntimeError):
    """The order was created but no bill could be opened; it has been cancelled."""

    def __init__(self, message: str, *, reference: str | None = None, order_ids: list[int] | None = None):
        super().__init__(message)
        self.reference = reference
        self.order_ids = order_ids or []


def _validate_items(items: list[dict]) -> list[tuple[Product, int]]:
    if not items:
        raise ValidationError("At least one item is required")

    lines: list[tuple[Product, int]] = []
    seller_ids = set()
    for item in items:
        product = db.session.get(Product, item["product_id"])
        if product is None:
            raise NotFoundError(f"Product {item['product_id']} not found")
        if not product.is_active:
            raise ValidationError(f"Product {product.id} is not available for sale")
        if item["quantity"] < 1:
            raise ValidationError("Quantity must be at least 1")
        # Early read; reserve() re-checks under the row lock
        available = stock_service.available_quantity(product.id)
        if available < item["quantity"]:
            raise stock_service.InsufficientStock(product.id, item["quantity"], available)
        seller_ids.add(product.seller_id)
        lines.append((product, item["quantity"]))

    if len(seller_ids) > 1:
        raise ValidationError("All items in one checkout must come from the same seller")
    return lines


def create_checkout(*, items: list[dict], buyer: dict, payment_method: str) -> dict:
    """
    Reserve stock and open a payment for a buyer's cart.

    Args:
        items: [{"product_id": int, "quantity": int}, ...]
        buyer: {"name", "email", "phone", "shipping_address", "buyer_id" (optional)}
        payment_method: gateway name or "manual_receipt"

    Returns:
        {"payment": {...}, "orders": [{...}, ...]}

    Raises:
        ValidationError / NotFoundError: bad input (nothing created)
        InsufficientStock: an item cannot be held (nothing created)
        CheckoutError: gateway refused the bill (orders cancelled, holds released)
    """
    adapter = None if payment_method == MANUAL_RECEIPT else get_adapter(payment_method)
    method_name = MANUAL_RECEIPT if adapter is None else adapter.name
    lines = _validate_items(items)
    notifications: list[int] = []

    def _op():
        now = utcnow()
        expires_at = now + timedelta(minutes=current_app.config["PAYMENT_WINDOW_MINUTES"])

        payment = Payment(
            reference=generate_payment_reference(),
            amount_cents=0,
            currency=current_app.config["CURRENCY"],
            payment_method=method_name,
            status="pending",
        )
        db.session.add(payment)
        db.session.flush()

        orders = []
        for product, qty in lines:
            product = stock_service.reserve(product.id, qty)
            subtotal = product.price_cents * qty
            order = Order(
                product_id=product.id,
                seller_id=product.seller_id,
                payment_id=payment.id,
                buyer_id=buyer.get("buyer_id"),
                buyer_name=buyer["name"],
                buyer_email=buyer["email"],
                phone=buyer["phone"],
                shipping_address=buyer["shipping_address"],
                quantity=qty,
                unit_price_cents=product.price_cents,
                shipping_cost_cents=product.shipping_cents,
                total_amount_cents=subtotal + product.shipping_cents,
                status="pending",
                payment_status="pending",
                payment_method=method_name,
                stock_state=stock_service.STOCK_HELD,
                expires_at=expires_at,
            )
            db.session.add(order)
            db.session.flush()
            append_status_history(
                order,
                description=f"Order placed; awaiting payment via {method_name}.",
                updated_by="buyer",
                location="Checkout",
            )
            orders.append(order)

        payment.amount_cents = sum(o.total_amount_cents for o in orders)
        db.session.commit()
        return payment.id, [o.id for o in orders]

    payment_id, order_ids = run_with_retry(_op)
    payment = db.session.get(Payment, payment_id)
    current_app.logger.info(
        "Checkout %s: %d order(s), %s via %s", payment.reference, len(order_ids), payment.amount_cents, method_name
    )

    bill = None
    if adapter is not None:
        try:
            bill = adapter.create_bill(payment, list(payment.orders))
        except BillCreationError as e:
            current_app.logger.warning("Bill creation failed for %s: %s", payment.reference, e)
            _abandon_checkout(payment_id, f"Payment could not be started: {e}")
            raise CheckoutError(str(e), reference=payment.reference, order_ids=order_ids)

    # The buyer is only told to pay once there is something to pay
    def _open():
        notifications.clear()
        locked = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).one()
        if bill is not None:
            if locked.external_id is None:
                locked.external_id = bill.external_id
            locked.payment_url = bill.payment_url

        window = current_app.config["PAYMENT_WINDOW_MINUTES"]
        for order in locked.orders:
            if not is_awaiting_payment(order):
                continue
            notifications.append(notification_service.enqueue_for_order(
                "order_placed_buyer", order, order.buyer_email, window_minutes=window
            ).id)
            notifications.append(notification_service.enqueue_for_order(
                "order_placed_seller", order, order.seller.email
            ).id)
        db.session.commit()
        return locked

    payment = run_with_retry(_open)
    notification_service.dispatch(notifications)
    return {
        "payment": payment.to_dict(),
        "orders": [o.to_dict() for o in payment.orders],
    }


def _abandon_checkout(payment_id: int, reason: str) -> None:
    """Compensating transaction for a checkout whose bill could not be created."""
    notifications: list[int] = []

    def _op():
        notifications.clear()
        lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).one()
        orders = lock_for_update(
            db.session.query(Order).filter_by(payment_id=payment_id).order_by(Order.id)
        ).all()
        for order in orders:
            if is_awaiting_payment(order):
                cancel_unpaid_order(
                    order,
                    reason=reason,
                    updated_by="system",
                    location="Checkout",
                    settled_via=SETTLED_VIA_CANCELLATION,
                    notifications=notifications,
                )
        db.session.commit()

    run_with_retry(_op)
    notification_service.dispatch(notifications)


def get_payment(reference: str) -> Payment:
    payment = db.session.query(Payment).filter_by(reference=reference).first()
    if payment is None:
        raise NotFoundError(f"Payment {reference} not found")
    return payment
