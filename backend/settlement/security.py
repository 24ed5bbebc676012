# Overview: HMAC capability tokens for emailed receipt links, seller dashboard access and cron calls.

"""
Capability Tokens

- Receipt action token: hex HMAC-SHA256 over "receipt:<id>" keyed by
  EMAIL_ACTION_SECRET. Embedded in the approve/reject links emailed to the
  seller; deterministic, so a link can be re-sent without state.
- Seller token: "seller:<id>:<hex HMAC-SHA256 over 'seller:<id>'>" keyed by
  SECRET_KEY. Stands in for the account system's session token.
- Cron secret: shared secret sent in X-Cron-Secret.

All comparisons are constant-time.
"""

from __future__ import annotations

import hashlib
import hmac

from flask import current_app


def _hmac(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _same(expected: str, supplied: str) -> bool:
    """Constant-time compare on bytes; str compare_digest raises on non-ASCII input."""
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8", "replace"))


def receipt_action_token(receipt_id: int) -> str:
    return _hmac(current_app.config["EMAIL_ACTION_SECRET"], f"receipt:{receipt_id}")


def verify_receipt_action_token(receipt_id: int, token: str | None) -> bool:
    if not token:
        return False
    return _same(receipt_action_token(receipt_id), token.strip().lower())


def seller_token(seller_id: int) -> str:
    message = f"seller:{seller_id}"
    return f"{message}:{_hmac(current_app.config['SECRET_KEY'], message)}"


def parse_seller_token(token: str | None) -> int | None:
    """Return the seller id a valid token was issued for, else None."""
    if not token:
        return None
    parts = token.strip().split(":")
    if len(parts) != 3 or parts[0] != "seller" or not parts[1].isdigit():
        return None
    seller_id = int(parts[1])
    if not _same(seller_token(seller_id), token.strip()):
        return None
    return seller_id


def verify_cron_secret(value: str | None) -> bool:
    secret = current_app.config.get("CRON_SECRET")
    if not secret or not value:
        return False
    return _same(secret, value)
