# Overview: Request decorators for seller-token and cron-secret protected routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import Seller
from .security import parse_seller_token, verify_cron_secret


def require_seller(f):
    """
    Require a seller capability token.

    Sets g.seller_id and g.seller. Returns 401 if the Authorization header
    is missing, the token does not verify, or the seller is inactive.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        seller_id = parse_seller_token(auth_header.split(" ", 1)[1])
        if seller_id is None:
            return jsonify({"error": "Invalid seller token"}), 401

        seller = db.session.get(Seller, seller_id)
        if seller is None or not seller.is_active:
            return jsonify({"error": "Invalid seller token"}), 401

        g.seller_id = seller_id
        g.seller = seller
        return f(*args, **kwargs)

    return decorated_function


def require_cron_secret(f):
    """Require the X-Cron-Secret header used by the external scheduler."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not verify_cron_secret(request.headers.get("X-Cron-Secret")):
            return jsonify({"error": "Invalid cron secret"}), 401
        return f(*args, **kwargs)

    return decorated_function
