# Overview: Scheduler-triggered sweeps (expiry and reminders), protected by X-Cron-Secret.

from flask import Blueprint, request, jsonify

from ..decorators import require_cron_secret
from ..services import reconciliation_service, reminder_service
from ..time_utils import parse_iso_datetime


cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


def _now_override():
    # Optional ?now=ISO-8601 for replaying a sweep at a fixed clock
    value = request.args.get("now")
    return parse_iso_datetime(value) if value else None


@cron_bp.post("/expire-orders")
@require_cron_secret
def expire_orders_route():
    try:
        now = _now_override()
    except ValueError:
        return jsonify({"error": "now must be an ISO-8601 datetime"}), 400
    return jsonify(reconciliation_service.expire_unpaid_orders(now)), 200


@cron_bp.post("/send-reminders")
@require_cron_secret
def send_reminders_route():
    try:
        now = _now_override()
    except ValueError:
        return jsonify({"error": "now must be an ISO-8601 datetime"}), 400
    return jsonify(reminder_service.send_due_reminders(now)), 200
