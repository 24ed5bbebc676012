# Overview: Email templates for order, payment, receipt and reminder notifications.

"""
Notification Templates

Each template is a (subject, text, html) triple of str.format patterns.
render() escapes every value for the HTML part; text and subject take the
raw values. Money is passed pre-formatted via format_money().
"""

from __future__ import annotations

import html


def format_money(amount_cents: int | None, currency: str = "MYR") -> str:
    if amount_cents is None:
        return "-"
    symbol = "RM" if currency == "MYR" else currency
    return f"{symbol}{amount_cents / 100:.2f}"


_WRAP = (
    '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
    "{body}"
    "</div>"
)

TEMPLATES = {
    # Checkout
    "order_placed_buyer": (
        "Order Confirmation - {reference}",
        "Hi {buyer_name}, we received your order #{order_id} for {quantity} x {product_name} "
        "({total}). Please complete payment within {window_minutes} minutes or the order is cancelled.",
        "<h2>Order received</h2><p>Hi <strong>{buyer_name}</strong>,</p>"
        "<p>Order #{order_id}: {quantity} x {product_name}, total {total}.</p>"
        "<p>Payment reference: <strong>{reference}</strong>. Please pay within {window_minutes} minutes.</p>",
    ),
    "order_placed_seller": (
        "New Order Received - Awaiting Payment",
        "Order #{order_id} from {buyer_name} ({buyer_email}) for {quantity} x {product_name} ({total}) "
        "is awaiting payment.",
        "<h2>New order awaiting payment</h2>"
        "<p>Order #{order_id} from {buyer_name} ({buyer_email}): {quantity} x {product_name}, total {total}.</p>",
    ),
    # Payment confirmed
    "payment_confirmed_buyer": (
        "Payment Confirmed - Order #{order_id}",
        "Hi {buyer_name}, your payment of {total} for order #{order_id} ({product_name}) was received "
        "via {method}. Your order is being processed.",
        "<h2>Payment Confirmed!</h2><p>Hi <strong>{buyer_name}</strong>,</p>"
        "<p>We received {total} for order #{order_id} ({quantity} x {product_name}) via {method}.</p>"
        "<p>Reference: {reference}</p>",
    ),
    "payment_confirmed_seller": (
        "Payment Received - Order #{order_id}",
        "Order #{order_id} ({quantity} x {product_name}, {total}) has been paid via {method}. "
        "Ship to: {buyer_name}, {shipping_address}.",
        "<h2>New paid order</h2><p>Order #{order_id}: {quantity} x {product_name}, total {total}, paid via {method}.</p>"
        "<p>Buyer: {buyer_name} ({buyer_email})<br>Ship to: {shipping_address}</p>"
        "<p>Please process and ship this order as soon as possible.</p>",
    ),
    "payment_confirmed_admin": (
        "Admin Alert: Payment Received - {total}",
        "Payment {reference} of {total} settled via {method} for order #{order_id} (seller {seller_name}).",
        "<h2>Payment received</h2><p>{reference}: {total} via {method} for order #{order_id} "
        "(seller {seller_name}, buyer {buyer_email}).</p>",
    ),
    "payment_failed_buyer": (
        "Payment Failed - Order #{order_id}",
        "Hi {buyer_name}, your payment for order #{order_id} was unsuccessful. You can try again or upload "
        "a transfer receipt before the payment window closes.",
        "<h2>Payment Failed</h2><p>Hi <strong>{buyer_name}</strong>,</p>"
        "<p>Your payment for order #{order_id} ({product_name}, {total}) was unsuccessful.</p>"
        "<p>Please try again or upload a transfer receipt before the payment window closes.</p>",
    ),
    # Receipts
    "receipt_uploaded_seller": (
        "Payment Receipt Awaiting Review - {total}",
        "A buyer uploaded a payment receipt ({total}) for {subject_line}. Approve: {approve_url} "
        "Reject: {reject_url}",
        "<h2>Receipt awaiting review</h2><p>A buyer uploaded a payment receipt of {total} for {subject_line}.</p>"
        '<p><a href="{approve_url}">Approve</a> | <a href="{reject_url}">Reject</a></p>',
    ),
    "receipt_approved_seller": (
        "Receipt Approved - Order #{order_id}",
        "You approved receipt #{receipt_id}. Order #{order_id} ({quantity} x {product_name}) is ready to process.",
        "<h2>Receipt approved</h2><p>Receipt #{receipt_id} approved. Order #{order_id} "
        "({quantity} x {product_name}) is ready to process.</p>",
    ),
    "receipt_rejected_buyer": (
        "Payment Receipt Rejected",
        "Hi {buyer_name}, the seller could not verify your payment receipt ({total}). Notes: {notes}",
        "<h2>Receipt rejected</h2><p>Hi <strong>{buyer_name}</strong>,</p>"
        "<p>The seller could not verify your payment receipt of {total}.</p><p>Notes: {notes}</p>",
    ),
    "receipt_rejected_seller": (
        "Receipt Rejected - #{receipt_id}",
        "You rejected receipt #{receipt_id} ({total}).",
        "<h2>Receipt rejected</h2><p>You rejected receipt #{receipt_id} ({total}).</p>",
    ),
    # Lifecycle
    "order_cancelled_buyer": (
        "Order Cancelled - #{order_id}",
        "Hi {buyer_name}, order #{order_id} ({product_name}) was cancelled: {reason}",
        "<h2>Order cancelled</h2><p>Hi <strong>{buyer_name}</strong>,</p>"
        "<p>Order #{order_id} ({product_name}) was cancelled: {reason}</p>",
    ),
    "shipping_update_buyer": (
        "Order #{order_id} is now {status_label}",
        "Hi {buyer_name}, order #{order_id} is now {status_label}. Courier: {courier_name} Tracking: {tracking_number}",
        "<h2>Order update</h2><p>Hi <strong>{buyer_name}</strong>,</p>"
        "<p>Order #{order_id} is now <strong>{status_label}</strong>.</p>"
        "<p>Courier: {courier_name}<br>Tracking: {tracking_number}</p>",
    ),
    "pending_receipt_reminder_seller": (
        "Reminder: {pending_count} payment receipt(s) awaiting review",
        "Hi {seller_name}, you have {pending_count} payment receipt(s) awaiting review, oldest uploaded {oldest}. "
        "Review them at {dashboard_url}",
        "<h2>Receipts awaiting review</h2><p>Hi <strong>{seller_name}</strong>,</p>"
        "<p>You have <strong>{pending_count}</strong> payment receipt(s) awaiting review "
        "(oldest uploaded {oldest}).</p>"
        '<p><a href="{dashboard_url}">Open dashboard</a></p>',
    ),
    "reconciliation_anomaly_admin": (
        "Admin Alert: Payment {reference} needs review ({kind})",
        "Payment {reference} was flagged {kind}: {detail}",
        "<h2>Payment needs review</h2><p>Payment {reference} was flagged <strong>{kind}</strong>.</p><p>{detail}</p>",
    ),
}


class _Context(dict):
    def __missing__(self, key):
        return "-"


def render(name: str, context: dict) -> tuple[str, str, str]:
    """Return (subject, text, html) for a template. Missing fields render as '-'."""
    if name not in TEMPLATES:
        raise KeyError(f"Unknown notification template '{name}'")
    subject, text, body = TEMPLATES[name]
    raw = _Context({key: "-" if value is None else value for key, value in context.items()})
    safe = _Context({key: html.escape(str(value)) for key, value in raw.items()})
    return (
        subject.format_map(raw),
        text.format_map(raw),
        _WRAP.format(body=body.format_map(safe)),
    )
