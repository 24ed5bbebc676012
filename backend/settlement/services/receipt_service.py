# Overview: Buyer receipt uploads and the single writer of receipt status.

"""
Receipt Review Workflow

WHY: Buyers who pay by bank transfer or QR code have no gateway callback.
They upload proof of payment and the seller approves or rejects it, either
from the dashboard or from signed links in the notification email.

RULES:
- A receipt is pending until reviewed, then approved or rejected, exactly once.
- mark_reviewed() is the only function that changes Receipt.status; the
  reconciliation engine calls it inside its decision transaction.
- An order (or the payment it belongs to) has at most one pending receipt.
- Uploading a receipt for an order moves it to payment_status pending_review,
  which suspends the payment-window expiry until the seller decides.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Order, Product, Receipt, Seller
from ..security import receipt_action_token, verify_receipt_action_token
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError
from . import notification_service
from .concurrency import lock_for_update, run_with_retry
from .order_state import is_awaiting_payment


RECEIPT_PENDING = "pending"
RECEIPT_APPROVED = "approved"
RECEIPT_REJECTED = "rejected"
DECISIONS = (RECEIPT_APPROVED, RECEIPT_REJECTED)

PAYMENT_TYPE_ORDER = "order_payment"
PAYMENT_TYPE_QR = "qr_payment"

REVIEWED_VIA_DASHBOARD = "dashboard"
REVIEWED_VIA_EMAIL = "email_link"


class ReceiptError(ValidationError):
    """Raised for invalid receipt uploads or decisions."""


class ReceiptAlreadyReviewed(ConflictError):
    """Raised when a decision targets a receipt that is no longer pending."""

    def __init__(self, receipt: Receipt):
        super().__init__(f"Receipt {receipt.id} has already been {receipt.status}")
        self.receipt_id = receipt.id
        self.status = receipt.status
        self.order_id = receipt.order_id


# =============================================================================
# CAPABILITY TOKENS
# =============================================================================

def action_token(receipt_id: int) -> str:
    return receipt_action_token(receipt_id)


def verify_action_token(receipt_id: int, token: str | None) -> bool:
    return verify_receipt_action_token(receipt_id, token)


def action_urls(receipt_id: int) -> tuple[str, str]:
    """Signed approve/reject links for the seller email."""
    base_url = current_app.config["PUBLIC_BASE_URL"].rstrip("/")
    token = action_token(receipt_id)
    url = f"{base_url}/api/receipts/email-action?receiptId={receipt_id}&token={token}"
    return f"{url}&action={RECEIPT_APPROVED}", f"{url}&action={RECEIPT_REJECTED}"


# =============================================================================
# UPLOAD
# =============================================================================

def _validate_image(image: bytes | None, content_type: str | None) -> None:
    if not image:
        raise ReceiptError("Receipt image is required")
    if not content_type or not content_type.lower().startswith("image/"):
        raise ReceiptError("Receipt must be an image")
    if len(image) > current_app.config["RECEIPT_MAX_BYTES"]:
        raise ReceiptError("Receipt image is too large")


def _has_pending_receipt(order: Order) -> bool:
    order_ids = [o.id for o in order.payment.orders] if order.payment else [order.id]
    return db.session.query(Receipt.id).filter(
        Receipt.order_id.in_(order_ids),
        Receipt.status == RECEIPT_PENDING,
    ).first() is not None


def upload_receipt(
    *,
    seller_id: int,
    image: bytes,
    content_type: str,
    amount_cents: int | None = None,
    order_id: int | None = None,
    buyer_id: int | None = None,
    buyer_name: str | None = None,
    buyer_email: str | None = None,
    buyer_phone: str | None = None,
    shipping_address: str | None = None,
    product_id: int | None = None,
    quantity: int | None = None,
) -> Receipt:
    """
    Store a buyer's proof of payment for seller review.

    With order_id the receipt pays an existing order (order_payment).
    Without it the receipt is an ad-hoc QR payment (qr_payment) and must
    carry product_id, quantity, amount and buyer contact fields; the order is
    created when the seller approves.

    Raises:
        ReceiptError: invalid image or missing fields
        NotFoundError: unknown seller, order or product
        ConflictError: order not awaiting payment or already under review
    """
    _validate_image(image, content_type)
    # Imported here: the engine imports this module for mark_reviewed()
    from .reconciliation_service import mark_under_review

    notifications: list[int] = []

    def _op():
        notifications.clear()

        seller = db.session.get(Seller, seller_id)
        if seller is None or not seller.is_active:
            raise NotFoundError(f"Seller {seller_id} not found")

        receipt = Receipt(
            seller_id=seller_id,
            buyer_id=buyer_id,
            image=image,
            image_content_type=content_type.lower(),
            status=RECEIPT_PENDING,
            uploaded_at=utcnow(),
        )

        if order_id is not None:
            order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            if order.seller_id != seller_id:
                raise ReceiptError(f"Order {order_id} does not belong to seller {seller_id}")
            if _has_pending_receipt(order):
                raise ConflictError(f"Order {order_id} already has a receipt awaiting review")

            receipt.payment_type = PAYMENT_TYPE_ORDER
            receipt.order_id = order.id
            receipt.amount_cents = amount_cents if amount_cents is not None else (
                order.payment.amount_cents if order.payment else order.total_amount_cents
            )
            receipt.buyer_name = order.buyer_name
            receipt.buyer_email = order.buyer_email
            receipt.buyer_phone = order.phone
            receipt.buyer_id = buyer_id if buyer_id is not None else order.buyer_id
            db.session.add(receipt)
            db.session.flush()

            mark_under_review(order, receipt)
            subject_line = f"order #{order.id}"
        else:
            if product_id is None or quantity is None or amount_cents is None:
                raise ReceiptError("QR payment receipts require product_id, quantity and amount")
            if quantity < 1 or amount_cents < 1:
                raise ReceiptError("Quantity and amount must be positive")
            if not buyer_name or not buyer_email:
                raise ReceiptError("QR payment receipts require buyer name and email")
            product = db.session.get(Product, product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            if product.seller_id != seller_id:
                raise ReceiptError(f"Product {product_id} does not belong to seller {seller_id}")

            receipt.payment_type = PAYMENT_TYPE_QR
            receipt.amount_cents = amount_cents
            receipt.buyer_name = buyer_name
            receipt.buyer_email = buyer_email
            receipt.buyer_phone = buyer_phone
            receipt.shipping_address = shipping_address
            receipt.product_id = product.id
            receipt.quantity = quantity
            db.session.add(receipt)
            db.session.flush()
            subject_line = f"QR payment: {quantity} x {product.name}"

        approve_url, reject_url = action_urls(receipt.id)
        notifications.append(notification_service.enqueue_for_receipt(
            "receipt_uploaded_seller",
            receipt,
            seller.email,
            subject_line=subject_line,
            approve_url=approve_url,
            reject_url=reject_url,
        ).id)

        db.session.commit()
        return receipt

    receipt = run_with_retry(_op)
    current_app.logger.info("Receipt %s uploaded for seller %s", receipt.id, seller_id)
    notification_service.dispatch(notifications)
    return receipt


# =============================================================================
# STATUS (single writer)
# =============================================================================

def lock_receipt(receipt_id: int) -> Receipt:
    receipt = lock_for_update(db.session.query(Receipt).filter_by(id=receipt_id)).first()
    if receipt is None:
        raise NotFoundError(f"Receipt {receipt_id} not found")
    return receipt


def mark_reviewed(receipt: Receipt, decision: str, *, notes: str | None = None, via: str) -> Receipt:
    """
    Move a pending receipt to approved or rejected. Runs inside the caller's transaction.

    Raises:
        ReceiptError: decision is not approved/rejected
        ReceiptAlreadyReviewed: receipt is no longer pending
    """
    if decision not in DECISIONS:
        raise ReceiptError("Action must be 'approved' or 'rejected'")
    if receipt.status != RECEIPT_PENDING:
        raise ReceiptAlreadyReviewed(receipt)

    receipt.status = decision
    receipt.seller_notes = notes[:500] if notes else None
    receipt.reviewed_at = utcnow()
    receipt.reviewed_via = via
    db.session.flush()
    return receipt


# =============================================================================
# QUERIES
# =============================================================================

def list_receipts(seller_id: int, status: str | None = None) -> list[Receipt]:
    query = db.session.query(Receipt).filter_by(seller_id=seller_id)
    if status:
        if status not in (RECEIPT_PENDING, *DECISIONS):
            raise ReceiptError(f"Invalid receipt status '{status}'")
        query = query.filter_by(status=status)
    return query.order_by(Receipt.uploaded_at.desc(), Receipt.id.desc()).all()


def get_receipt_image(receipt_id: int, seller_id: int) -> tuple[bytes, str]:
    receipt = db.session.get(Receipt, receipt_id)
    if receipt is None or receipt.seller_id != seller_id:
        raise NotFoundError(f"Receipt {receipt_id} not found")
    return receipt.image, receipt.image_content_type


def pending_receipts_by_seller() -> dict[int, list[Receipt]]:
    """
    Pending receipts grouped by seller, oldest first.

    Receipts whose order was already settled another way (gateway, expiry)
    still wait for a decision but no longer need a reminder.
    """
    grouped: dict[int, list[Receipt]] = {}
    receipts = db.session.query(Receipt).filter_by(status=RECEIPT_PENDING).order_by(
        Receipt.uploaded_at, Receipt.id
    ).all()
    for receipt in receipts:
        if receipt.order is not None and not is_awaiting_payment(receipt.order):
            continue
        grouped.setdefault(receipt.seller_id, []).append(receipt)
    return grouped
