# Overview: Flask API routes for the seller dashboard; parses input and returns JSON responses.

# backend/settlement/routes/seller.py
"""
Seller Dashboard API

All routes require a seller capability token (Authorization: Bearer seller:<id>:<sig>).
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..decorators import require_seller
from ..extensions import db
from ..services import fulfillment_service, receipt_service, reminder_service
from ..validation import ConflictError, NotFoundError, ValidationError, optional_text, require_text


seller_bp = Blueprint("seller", __name__, url_prefix="/api/seller")


# =============================================================================
# RECEIPTS
# =============================================================================

@seller_bp.get("/receipts")
@require_seller
def list_receipts_route():
    """Receipts for this seller, optionally filtered by ?status=pending|approved|rejected."""
    try:
        receipts = receipt_service.list_receipts(g.seller_id, request.args.get("status"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({
        "receipts": [r.to_dict() for r in receipts],
        "summary": reminder_service.pending_review_summary(g.seller_id),
    }), 200


# =============================================================================
# REMINDER SETTINGS
# =============================================================================

@seller_bp.get("/reminder-frequency")
@require_seller
def get_reminder_frequency_route():
    return jsonify(reminder_service.get_reminder_settings(g.seller_id)), 200


@seller_bp.put("/reminder-frequency")
@require_seller
def set_reminder_frequency_route():
    """
    Request body: {"frequency": "off" | "30s" | "30m" | "1h"}
    """
    data = request.get_json(silent=True) or {}
    try:
        seller = reminder_service.set_reminder_frequency(g.seller_id, str(data.get("frequency") or ""))
        return jsonify({"reminder_frequency": seller.reminder_frequency}), 200
    except ValidationError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 404


# =============================================================================
# ORDERS
# =============================================================================

@seller_bp.get("/orders")
@require_seller
def list_orders_route():
    orders = fulfillment_service.list_seller_orders(g.seller_id, request.args.get("status"))
    return jsonify({"orders": [o.to_dict() for o in orders]}), 200


@seller_bp.post("/orders/<int:order_id>/status")
@require_seller
def update_order_status_route(order_id: int):
    """
    Move a paid order along the shipping pipeline.

    Request body:
    {
        "status": "processing" | "ready_to_ship" | "shipped" | "out_for_delivery" | "delivered" | "completed",
        "tracking_number": "MY123456789",   (required for shipped)
        "courier_name": "PosLaju",
        "notes": "..."
    }

    Returns:
        200: Updated order
        400: Invalid status or missing tracking number
        404: Order not found
        409: Transition not allowed
    """
    data = request.get_json(silent=True) or {}
    try:
        order = fulfillment_service.update_shipping(
            order_id,
            g.seller_id,
            status=require_text(data, "status", max_length=32),
            tracking_number=optional_text(data, "tracking_number", max_length=64),
            courier_name=optional_text(data, "courier_name", max_length=64),
            notes=optional_text(data, "notes", max_length=255),
        )
        return jsonify({"order": order.to_dict()}), 200
    except ValidationError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Shipping update failed for order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@seller_bp.post("/orders/<int:order_id>/cancel")
@require_seller
def cancel_order_route(order_id: int):
    """
    Request body: {"reason": "Out of stock"}

    Unpaid orders are cancelled and their hold released; paid orders not
    yet shipped are cancelled as refunded and restocked.
    """
    data = request.get_json(silent=True) or {}
    try:
        order = fulfillment_service.cancel_order(
            order_id, g.seller_id, reason=require_text(data, "reason", max_length=255)
        )
        return jsonify({"order": order.to_dict()}), 200
    except ValidationError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Cancellation failed for order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500
