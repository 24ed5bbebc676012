# Overview: Pending-receipt reminders with a persisted per-seller throttle.

"""
Reminder Scheduler

WHY: Sellers forget to review receipts, and a buyer's money sits unconfirmed
until they do. The sweep nudges each seller at the cadence they chose.

THROTTLE:
- Seller.last_reminder_sent_at is the only throttle state. It is read and
  written under the seller row lock in the same transaction that queues the
  reminder, so two concurrent sweeps send one reminder, and a restart
  never resets the clock.
- Cadence "off" never sends, whatever the backlog.
- send_due_reminders(now) depends only on persisted rows and now, so tests
  pass an explicit clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import Seller
from ..time_utils import to_utc_z, utcnow
from ..validation import NotFoundError, ValidationError
from . import notification_service, receipt_service
from .concurrency import lock_for_update, run_with_retry


FREQUENCY_OFF = "off"

CADENCES: dict[str, timedelta | None] = {
    FREQUENCY_OFF: None,
    "30s": timedelta(seconds=30),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
}


def is_due(seller: Seller, now: datetime) -> bool:
    cadence = CADENCES.get(seller.reminder_frequency)
    if cadence is None:
        return False
    if seller.last_reminder_sent_at is None:
        return True
    return now - seller.last_reminder_sent_at >= cadence


def send_due_reminders(now: datetime | None = None) -> dict:
    """
    Send one reminder to every seller with pending receipts whose cadence has elapsed.

    Returns:
        {"sent": [seller ids], "throttled": int, "disabled": int}
    """
    now = now or utcnow()
    pending = receipt_service.pending_receipts_by_seller()
    summary = {"sent": [], "throttled": 0, "disabled": 0}
    base_url = current_app.config["PUBLIC_BASE_URL"].rstrip("/")

    for seller_id, receipts in pending.items():
        notifications: list[int] = []

        def _op():
            notifications.clear()
            seller = lock_for_update(db.session.query(Seller).filter_by(id=seller_id)).one()
            if CADENCES.get(seller.reminder_frequency) is None:
                db.session.rollback()
                return "disabled"
            if not seller.is_active or not is_due(seller, now):
                db.session.rollback()
                return "throttled"

            notifications.append(notification_service.enqueue(
                "pending_receipt_reminder_seller",
                seller.email,
                {
                    "seller_name": seller.name,
                    "pending_count": len(receipts),
                    "oldest": to_utc_z(receipts[0].uploaded_at),
                    "dashboard_url": f"{base_url}/seller/dashboard",
                },
                seller_id=seller.id,
            ).id)
            seller.last_reminder_sent_at = now
            db.session.commit()
            return "sent"

        outcome = run_with_retry(_op)
        if outcome == "sent":
            summary["sent"].append(seller_id)
            notification_service.dispatch(notifications)
        else:
            summary[outcome] += 1

    if summary["sent"]:
        current_app.logger.info("Sent pending-receipt reminders to sellers %s", summary["sent"])
    return summary


def set_reminder_frequency(seller_id: int, frequency: str) -> Seller:
    if frequency not in CADENCES:
        raise ValidationError(f"frequency must be one of {', '.join(CADENCES)}")

    def _op():
        seller = lock_for_update(db.session.query(Seller).filter_by(id=seller_id)).first()
        if seller is None:
            raise NotFoundError(f"Seller {seller_id} not found")
        seller.reminder_frequency = frequency
        db.session.commit()
        return seller

    return run_with_retry(_op)


def get_reminder_settings(seller_id: int) -> dict:
    seller = db.session.get(Seller, seller_id)
    if seller is None:
        raise NotFoundError(f"Seller {seller_id} not found")
    return {
        "reminder_frequency": seller.reminder_frequency,
        "last_reminder_sent_at": to_utc_z(seller.last_reminder_sent_at),
        "available_frequencies": list(CADENCES),
    }


def pending_review_summary(seller_id: int) -> dict:
    """Pending-review count for the seller dashboard badge."""
    receipts = receipt_service.list_receipts(seller_id, receipt_service.RECEIPT_PENDING)
    return {
        "pending_count": len(receipts),
        "oldest_uploaded_at": to_utc_z(receipts[-1].uploaded_at) if receipts else None,
        "receipt_ids": [r.id for r in receipts],
    }
