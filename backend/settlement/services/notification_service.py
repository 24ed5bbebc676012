# Overview: Transactional email outbox; enqueue inside the business transaction, deliver after commit.

"""
Notification Service

WHY: Payment truth must not depend on email delivery. A slow or failing
mail relay must never hold a row lock or roll back a settled payment.

DESIGN:
- enqueue() renders a template and adds a NotificationOutbox row to the
  caller's session. It never commits and never touches the network.
- dispatch(ids) runs after the caller committed, outside any lock. Each row
  is delivered through the configured backend and marked sent or failed.
  Delivery failures are logged and recorded on the row; they never raise.
- retry_failed() re-delivers queued/failed rows (CLI).

BACKENDS (NOTIFICATION_BACKEND):
- log:    writes the message to the application logger
- memory: appends to app.extensions["settlement_notifications"] (tests)
- http:   POSTs {from, to, subject, html, text} to EMAIL_RELAY_URL
"""

from __future__ import annotations

from typing import Iterable

import requests
from flask import current_app

from ..extensions import db
from ..models import NotificationOutbox, Order, Receipt
from ..time_utils import utcnow
from . import notification_templates
from .notification_templates import format_money


STATUS_QUEUED = "queued"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"

_MEMORY_KEY = "settlement_notifications"


def init_app(app) -> None:
    backend = app.config.get("NOTIFICATION_BACKEND", "log")
    if backend not in _BACKENDS:
        raise RuntimeError(f"Unknown NOTIFICATION_BACKEND '{backend}'")
    app.extensions[_MEMORY_KEY] = []


# =============================================================================
# BACKENDS
# =============================================================================

def _send_log(message: dict) -> tuple[bool, str | None]:
    current_app.logger.info(
        "Email to %s: %s\n%s", message["to"], message["subject"], message["text"]
    )
    return True, None


def _send_memory(message: dict) -> tuple[bool, str | None]:
    current_app.extensions[_MEMORY_KEY].append(message)
    return True, None


def _send_http(message: dict) -> tuple[bool, str | None]:
    url = current_app.config.get("EMAIL_RELAY_URL")
    if not url:
        return False, "EMAIL_RELAY_URL not set"
    try:
        r = requests.post(url, json=message, timeout=current_app.config["GATEWAY_TIMEOUT_SECONDS"])
    except requests.RequestException as e:
        return False, f"relay_exception:{e}"
    if 200 <= r.status_code < 300:
        return True, None
    return False, f"relay_http_{r.status_code}"


_BACKENDS = {
    "log": _send_log,
    "memory": _send_memory,
    "http": _send_http,
}


def sent_messages() -> list[dict]:
    """Messages delivered by the memory backend in this app."""
    return current_app.extensions[_MEMORY_KEY]


# =============================================================================
# ENQUEUE (inside the business transaction)
# =============================================================================

def enqueue(
    template: str,
    recipient: str,
    context: dict,
    *,
    order_id: int | None = None,
    receipt_id: int | None = None,
    seller_id: int | None = None,
) -> NotificationOutbox:
    subject, text, html = notification_templates.render(template, context)
    row = NotificationOutbox(
        template=template,
        recipient=recipient,
        subject=subject[:255],
        text_body=text,
        html_body=html,
        order_id=order_id,
        receipt_id=receipt_id,
        seller_id=seller_id,
        status=STATUS_QUEUED,
        attempts=0,
        created_at=utcnow(),
    )
    db.session.add(row)
    db.session.flush()
    return row


def order_context(order: Order, **extra) -> dict:
    """Common template fields for an order."""
    currency = order.payment.currency if order.payment else current_app.config["CURRENCY"]
    context = {
        "order_id": order.id,
        "reference": order.payment.reference if order.payment else None,
        "buyer_name": order.buyer_name,
        "buyer_email": order.buyer_email,
        "shipping_address": order.shipping_address,
        "product_name": order.product.name if order.product else None,
        "quantity": order.quantity,
        "total": format_money(order.total_amount_cents, currency),
        "method": order.payment_method,
        "seller_name": order.seller.name if order.seller else None,
    }
    context.update(extra)
    return context


def enqueue_for_order(template: str, order: Order, recipient: str, **extra) -> NotificationOutbox:
    return enqueue(
        template,
        recipient,
        order_context(order, **extra),
        order_id=order.id,
        seller_id=order.seller_id,
    )


def enqueue_for_receipt(template: str, receipt: Receipt, recipient: str, **extra) -> NotificationOutbox:
    context = {
        "receipt_id": receipt.id,
        "order_id": receipt.order_id,
        "buyer_name": receipt.buyer_name,
        "total": format_money(receipt.amount_cents, current_app.config["CURRENCY"]),
        "notes": receipt.seller_notes,
    }
    if receipt.order is not None:
        context = order_context(receipt.order, receipt_id=receipt.id, notes=receipt.seller_notes)
    context.update(extra)
    return enqueue(
        template,
        recipient,
        context,
        order_id=receipt.order_id,
        receipt_id=receipt.id,
        seller_id=receipt.seller_id,
    )


# =============================================================================
# DISPATCH (after commit, outside any lock)
# =============================================================================

def _deliver(row: NotificationOutbox) -> bool:
    send = _BACKENDS[current_app.config.get("NOTIFICATION_BACKEND", "log")]
    message = {
        "from": current_app.config.get("EMAIL_FROM"),
        "to": row.recipient,
        "subject": row.subject,
        "html": row.html_body,
        "text": row.text_body,
    }
    try:
        ok, error = send(message)
    except Exception as e:  # backend bugs must not break the caller
        current_app.logger.exception("Notification backend raised for outbox %s", row.id)
        ok, error = False, f"backend_exception:{e}"

    row.attempts = (row.attempts or 0) + 1
    if ok:
        row.status = STATUS_SENT
        row.sent_at = utcnow()
        row.last_error = None
    else:
        row.status = STATUS_FAILED
        row.last_error = (error or "unknown")[:500]
        current_app.logger.warning(
            "Notification %s (%s) to %s failed: %s", row.id, row.template, row.recipient, row.last_error
        )
    db.session.commit()
    return ok


def dispatch(notification_ids: Iterable[int]) -> dict:
    """
    Deliver outbox rows by id. Rows already sent are skipped.

    Returns:
        {"sent": int, "failed": int}
    """
    summary = {"sent": 0, "failed": 0}
    for notification_id in notification_ids:
        row = db.session.get(NotificationOutbox, notification_id)
        if row is None or row.status == STATUS_SENT:
            continue
        if _deliver(row):
            summary["sent"] += 1
        else:
            summary["failed"] += 1
    return summary


def retry_failed(limit: int = 50) -> dict:
    """Re-deliver queued and failed rows, oldest first."""
    ids = [
        row_id for (row_id,) in db.session.query(NotificationOutbox.id).filter(
            NotificationOutbox.status.in_([STATUS_QUEUED, STATUS_FAILED])
        ).order_by(NotificationOutbox.id).limit(limit).all()
    ]
    return dispatch(ids)
