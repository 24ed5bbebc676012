# Overview: Inbound payment gateway callbacks; verify, parse, reconcile.

# backend/settlement/routes/webhooks.py
"""
Gateway Webhooks

POST /api/payments/webhooks/<provider>

ORDER OF CHECKS:
1. Signature over the raw body. Nothing is looked up before it passes.
2. Parse into a PaymentEvent.
3. Hand off to the reconciliation engine.

RESPONSES (providers retry on anything but 2xx):
- 200: applied, duplicate (already applied), or anomaly recorded
- 400: bad signature or malformed payload
- 404: unknown provider or no matching payment
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..services import reconciliation_service
from ..services.gateways import (
    GatewayPayloadError,
    GatewaySignatureError,
    UnknownGateway,
    get_adapter,
)
from ..services.reconciliation_service import PaymentNotFound


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/payments/webhooks")


@webhooks_bp.post("/<provider>")
def gateway_webhook(provider: str):
    raw = request.get_data(cache=True)

    try:
        adapter = get_adapter(provider)
    except UnknownGateway as e:
        return jsonify({"error": str(e)}), 404

    try:
        adapter.check_signature(raw, request.headers)
        event = adapter.parse(raw)
    except GatewaySignatureError:
        current_app.logger.warning(
            "Rejected %s callback with invalid signature from %s", adapter.name, request.remote_addr
        )
        return jsonify({"error": "Invalid signature"}), 400
    except GatewayPayloadError as e:
        current_app.logger.warning("Rejected malformed %s callback: %s", adapter.name, e)
        return jsonify({"error": str(e)}), 400

    try:
        outcome = reconciliation_service.apply_payment_event(event)
    except PaymentNotFound as e:
        db.session.rollback()
        current_app.logger.warning("Unmatched %s callback: %s", adapter.name, e)
        return jsonify({"error": "Payment not found"}), 404
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Processing %s callback failed", adapter.name)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "success": True,
        "result": outcome["result"],
        "reference": outcome["payment"]["reference"],
        "status": outcome["payment"]["status"],
    }), 200
