# Overview: Flask API routes for receipt upload and seller decisions.

# backend/settlement/routes/receipts.py
"""
Receipt API

Two decision entry points, one operation:
- POST /api/receipts/decision      seller dashboard (seller token)
- GET  /api/receipts/email-action  signed link from the seller email
Both call reconciliation_service.apply_receipt_decision(), so whichever
fires first wins and the other gets 409.
"""

from html import escape

from flask import Blueprint, Response, request, jsonify, current_app, g

from ..decorators import require_seller
from ..extensions import db
from ..services import receipt_service, reconciliation_service
from ..services.receipt_service import ReceiptAlreadyReviewed
from ..services.stock_service import InsufficientStock
from ..validation import (
    ConflictError,
    NotFoundError,
    ValidationError,
    optional_text,
    parse_int,
    parse_optional_int,
)


receipts_bp = Blueprint("receipts", __name__, url_prefix="/api/receipts")


@receipts_bp.post("")
def upload_receipt_route():
    """
    Upload a payment receipt (multipart/form-data).

    Form fields:
        receipt: image file (required)
        seller_id: int (required)
        order_id: int (order payment) -- or, for a QR payment:
        product_id, quantity, amount_cents, buyer_name, buyer_email,
        buyer_phone, shipping_address

    Returns:
        201: Receipt stored, seller notified
        400: Invalid image or fields
        404: Unknown seller, order or product
        409: Order not awaiting payment or already under review
    """
    form = request.form
    upload = request.files.get("receipt")

    try:
        if upload is None:
            raise ValidationError("receipt file is required")
        receipt = receipt_service.upload_receipt(
            seller_id=parse_int(form.get("seller_id"), "seller_id", minimum=1),
            image=upload.read(),
            content_type=upload.mimetype,
            amount_cents=parse_optional_int(form.get("amount_cents"), "amount_cents", minimum=1),
            order_id=parse_optional_int(form.get("order_id"), "order_id", minimum=1),
            buyer_id=parse_optional_int(form.get("buyer_id"), "buyer_id", minimum=1),
            buyer_name=optional_text(form, "buyer_name", max_length=120),
            buyer_email=optional_text(form, "buyer_email"),
            buyer_phone=optional_text(form, "buyer_phone", max_length=32),
            shipping_address=optional_text(form, "shipping_address", max_length=1000),
            product_id=parse_optional_int(form.get("product_id"), "product_id", minimum=1),
            quantity=parse_optional_int(form.get("quantity"), "quantity", minimum=1),
        )
        return jsonify({"receipt": receipt.to_dict()}), 201

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
        current_app.logger.exception("Receipt upload failed")
        return jsonify({"error": "Internal server error"}), 500


def _decide(receipt_id: int, action: str, notes: str | None, *, seller_id: int | None, via: str):
    """Shared error mapping for both decision entry points. Returns (body, status)."""
    try:
        outcome = reconciliation_service.apply_receipt_decision(
            receipt_id, action, notes=notes, seller_id=seller_id, via=via
        )
        return {
            "status": outcome["status"],
            "orderId": outcome["orderId"],
            "result": outcome["result"],
        }, 200
    except ReceiptAlreadyReviewed as e:
        db.session.rollback()
        return {"error": str(e), "status": e.status, "orderId": e.order_id}, 409
    except InsufficientStock as e:
        db.session.rollback()
        return {"error": str(e), "available": e.available}, 409
    except ValidationError as e:
        db.session.rollback()
        return {"error": str(e)}, 400
    except NotFoundError as e:
        db.session.rollback()
        return {"error": str(e)}, 404
    except ConflictError as e:
        db.session.rollback()
        return {"error": str(e)}, 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Receipt decision failed for receipt %s", receipt_id)
        return {"error": "Internal server error"}, 500


@receipts_bp.post("/decision")
@require_seller
def receipt_decision_route():
    """
    Approve or reject a receipt from the seller dashboard.

    Request body:
    {
        "receiptId": 12,
        "action": "approved" | "rejected",
        "notes": "Transfer not found"   (optional)
    }

    Returns:
        200: {"status", "orderId", "result"}
        400: Invalid action
        404: Receipt unknown or not this seller's
        409: Already reviewed, or not enough stock for a QR order
    """
    data = request.get_json(silent=True) or {}
    try:
        receipt_id = parse_int(data.get("receiptId", data.get("receipt_id")), "receiptId", minimum=1)
        notes = optional_text(data, "notes", max_length=500)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    body, status = _decide(
        receipt_id,
        str(data.get("action") or "").strip().lower(),
        notes,
        seller_id=g.seller_id,
        via=receipt_service.REVIEWED_VIA_DASHBOARD,
    )
    return jsonify(body), status


_ACTION_PAGE = (
    "<!doctype html><html><body style=\"font-family: Arial, sans-serif; padding: 40px;\">"
    "<h2>{title}</h2><p>{message}</p></body></html>"
)


@receipts_bp.get("/email-action")
def receipt_email_action_route():
    """
    Approve or reject from the signed link in the seller email.

    Query: receiptId, action, token. The token is checked before any lookup
    or mutation. Responds with a small HTML page.
    """
    try:
        receipt_id = parse_int(request.args.get("receiptId"), "receiptId", minimum=1)
    except ValidationError as e:
        return _page("Invalid link", str(e), 400)

    if not receipt_service.verify_action_token(receipt_id, request.args.get("token")):
        current_app.logger.warning("Rejected email action with bad token for receipt %s", receipt_id)
        return _page("Invalid link", "This approval link is invalid.", 401)

    action = (request.args.get("action") or "").strip().lower()
    body, status = _decide(
        receipt_id, action, None, seller_id=None, via=receipt_service.REVIEWED_VIA_EMAIL
    )
    if status == 200:
        return _page(f"Receipt {body['status']}", f"Receipt #{receipt_id} has been {body['status']}.", 200)
    return _page("Nothing to do", body["error"], status)


def _page(title: str, message: str, status: int) -> Response:
    html = _ACTION_PAGE.format(title=escape(title), message=escape(message))
    return Response(html, status=status, mimetype="text/html")


@receipts_bp.get("/<int:receipt_id>/image")
@require_seller
def receipt_image_route(receipt_id: int):
    try:
        image, content_type = receipt_service.get_receipt_image(receipt_id, g.seller_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return Response(image, status=200, mimetype=content_type)
