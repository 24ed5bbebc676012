# Overview: Buyer order tracking route.

from flask import Blueprint, request, jsonify

from ..services import fulfillment_service
from ..validation import NotFoundError


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("/<int:order_id>/tracking")
def order_tracking_route(order_id: int):
    """
    Buyer tracking view: order status, payment status and status history.

    Query: ?email=<buyer email> (required)
    """
    email = request.args.get("email")
    if not email:
        return jsonify({"error": "email is required"}), 400
    try:
        return jsonify({"order": fulfillment_service.get_tracking(order_id, buyer_email=email)}), 200
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
