# Overview: Flask API routes for checkout; parses input and returns JSON responses.

# backend/settlement/routes/checkout.py
"""
Checkout API

POST /api/checkout opens a payment for a cart:
- stock is soft-held for PAYMENT_WINDOW_MINUTES
- a hosted bill is created with the chosen gateway (except manual_receipt)
- the response carries the payment reference and payment_url
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..services import checkout_service
from ..services.checkout_service import CheckoutError
from ..services.stock_service import InsufficientStock
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    optional_text,
    parse_int,
    parse_optional_int,
    require_email,
    require_text,
)


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")


def _parse_items(raw) -> list[dict]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("items must be a non-empty list")
    items = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        items.append({
            "product_id": parse_int(item.get("product_id"), f"items[{index}].product_id", minimum=1),
            "quantity": parse_int(item.get("quantity", 1), f"items[{index}].quantity", minimum=1),
        })
    return items


@checkout_bp.post("/checkout")
def create_checkout_route():
    """
    Create orders and a payment for a cart.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2}],
        "buyer_name": "Aina",
        "buyer_email": "aina@example.com",
        "phone": "0123456789",
        "shipping_address": "12 Jalan Ampang, KL",
        "payment_method": "billplz",   // billplz, chip, sandbox, manual_receipt
        "buyer_id": 42                 // optional
    }

    Returns:
        201: {"payment": {...}, "orders": [...]}
        400: Invalid request
        404: Unknown product or gateway
        409: Insufficient stock
        502: Gateway could not create the bill (orders cancelled)
    """
    data = request.get_json(silent=True) or {}

    try:
        items = _parse_items(data.get("items"))
        buyer = {
            "name": require_text(data, "buyer_name", max_length=120),
            "email": require_email(data, "buyer_email"),
            "phone": require_text(data, "phone", max_length=32),
            "shipping_address": require_text(data, "shipping_address", max_length=1000),
            "buyer_id": parse_optional_int(data.get("buyer_id"), "buyer_id", minimum=1),
        }
        payment_method = optional_text(data, "payment_method", max_length=32) or "manual_receipt"

        result = checkout_service.create_checkout(items=items, buyer=buyer, payment_method=payment_method)
        return jsonify(result), 201

    except InsufficientStock as e:
        db.session.rollback()
        return jsonify({
            "error": str(e),
            "product_id": e.product_id,
            "available": e.available,
        }), 409
    except CheckoutError as e:
        db.session.rollback()
        return jsonify({"error": f"Payment could not be started: {e}", "reference": e.reference}), 502
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
        current_app.logger.exception("Checkout failed")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.get("/payments/<reference>")
def get_payment_route(reference: str):
    """Payment status by buyer-facing reference (payment result page)."""
    try:
        payment = checkout_service.get_payment(reference)
        return jsonify({"payment": payment.to_dict()}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
