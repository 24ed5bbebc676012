# backend/settlement/routes/system.py
"""
System health endpoint.

Checks the database, the notification outbox backlog and the
reconciliation anomaly queue.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import NotificationOutbox, Payment, PaymentAnomaly
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        payment_count = db.session.query(Payment).count()
        pending_count = db.session.query(Payment).filter_by(status="pending").count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "payments": payment_count,
                "pending_payments": pending_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_notification_health() -> dict:
    """Failed deliveries degrade the service; they never make it unhealthy."""
    try:
        failed = db.session.query(NotificationOutbox).filter_by(status="failed").count()
        queued = db.session.query(NotificationOutbox).filter_by(status="queued").count()
    except Exception:
        current_app.logger.exception("Notification health check failed")
        return {"status": "unhealthy", "error": "Outbox error"}

    return {
        "status": "degraded" if failed else "healthy",
        "backend": current_app.config.get("NOTIFICATION_BACKEND"),
        "details": {"failed": failed, "queued": queued},
    }


def check_reconciliation_health() -> dict:
    try:
        open_anomalies = db.session.query(PaymentAnomaly).filter_by(resolved=False).count()
    except Exception:
        current_app.logger.exception("Reconciliation health check failed")
        return {"status": "unhealthy", "error": "Anomaly queue error"}

    return {
        "status": "degraded" if open_anomalies else "healthy",
        "details": {"open_anomalies": open_anomalies},
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (failed emails, open anomalies)
    - 503: database unreachable
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "notifications": check_notification_health(),
        "reconciliation": check_reconciliation_health(),
    }

    statuses = [check["status"] for check in checks.values()]
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }
    return response, http_status
