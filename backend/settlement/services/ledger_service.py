# Overview: Append-only audit writes: order status history and payment anomalies.

from __future__ import annotations

import secrets
import string
from typing import Optional

from flask import current_app

from ..extensions import db
from ..models import Order, OrderStatusHistory, Payment, PaymentAnomaly
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError
from .concurrency import lock_for_update, run_with_retry
"""
Ledger Invariants (authoritative)

- order_status_history and payment_anomalies are append-only; the one update
  is an operator marking an anomaly resolved.
- Entries are written inside the same DB transaction as the change they record;
  a rolled-back transition leaves no history behind.
- No business decisions are made here.
"""

ANOMALY_CONFLICTING_OUTCOME = "conflicting_outcome"
ANOMALY_AMOUNT_MISMATCH = "amount_mismatch"
ANOMALY_LATE_PAYMENT = "late_payment"


def append_status_history(
    order: Order,
    *,
    description: str,
    updated_by: str,
    location: Optional[str] = None,
) -> OrderStatusHistory:
    """Record the order's current (status, payment_status) pair."""
    entry = OrderStatusHistory(
        order_id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        description=description[:500],
        location=location,
        updated_by=updated_by,
        created_at=utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def record_anomaly(
    payment: Payment,
    *,
    kind: str,
    detail: str,
    provider: str | None = None,
    external_id: str | None = None,
    reported_outcome: str | None = None,
    reported_amount_cents: int | None = None,
) -> PaymentAnomaly:
    """
    Flag a payment for manual review.

    The payment's state is left untouched; only needs_review is raised.
    """
    anomaly = PaymentAnomaly(
        payment_id=payment.id,
        kind=kind,
        provider=provider,
        external_id=external_id,
        reported_outcome=reported_outcome,
        reported_amount_cents=reported_amount_cents,
        detail=detail[:500],
        created_at=utcnow(),
    )
    payment.needs_review = True
    db.session.add(anomaly)
    db.session.flush()

    current_app.logger.warning(
        "Reconciliation anomaly %s on payment %s (%s): %s",
        kind, payment.id, payment.reference, detail,
    )
    return anomaly


def get_order_history(order_id: int) -> list[OrderStatusHistory]:
    return db.session.query(OrderStatusHistory).filter_by(
        order_id=order_id
    ).order_by(OrderStatusHistory.id).all()


def list_anomalies(*, include_resolved: bool = False, limit: int = 100) -> list[PaymentAnomaly]:
    query = db.session.query(PaymentAnomaly)
    if not include_resolved:
        query = query.filter_by(resolved=False)
    return query.order_by(PaymentAnomaly.id.desc()).limit(limit).all()


def find_open_anomaly(
    payment: Payment,
    *,
    kind: str,
    provider: str | None = None,
    external_id: str | None = None,
    reported_outcome: str | None = None,
    reported_amount_cents: int | None = None,
) -> Optional[PaymentAnomaly]:
    """Unresolved anomaly already recorded for the same report, if any."""
    return db.session.query(PaymentAnomaly).filter_by(
        payment_id=payment.id,
        kind=kind,
        provider=provider,
        external_id=external_id,
        reported_outcome=reported_outcome,
        reported_amount_cents=reported_amount_cents,
        resolved=False,
    ).first()


def resolve_anomaly(anomaly_id: int, note: str | None = None) -> PaymentAnomaly:
    """
    Close an anomaly after an operator has dealt with it.

    The payment's needs_review flag is cleared once none of its anomalies
    remain open.

    Raises:
        NotFoundError: unknown anomaly
        ConflictError: already resolved
    """
    def _op():
        anomaly = db.session.get(PaymentAnomaly, anomaly_id)
        if anomaly is None:
            raise NotFoundError(f"Anomaly {anomaly_id} not found")
        payment = lock_for_update(db.session.query(Payment).filter_by(id=anomaly.payment_id)).one()
        anomaly = lock_for_update(db.session.query(PaymentAnomaly).filter_by(id=anomaly_id)).one()
        if anomaly.resolved:
            raise ConflictError(f"Anomaly {anomaly_id} is already resolved")

        anomaly.resolved = True
        anomaly.resolved_at = utcnow()
        anomaly.resolution_note = (note or "").strip()[:500] or None
        db.session.flush()

        still_open = db.session.query(PaymentAnomaly.id).filter_by(
            payment_id=payment.id, resolved=False
        ).first()
        if still_open is None:
            payment.needs_review = False
        db.session.commit()
        return anomaly

    anomaly = run_with_retry(_op)
    current_app.logger.info("Anomaly %s on payment %s resolved", anomaly.id, anomaly.payment_id)
    return anomaly


_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def generate_payment_reference() -> str:
    """Buyer-facing payment reference, PAY- followed by 10 random characters."""
    while True:
        reference = "PAY-" + "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(10))
        if db.session.query(Payment.id).filter_by(reference=reference).first() is None:
            return reference
