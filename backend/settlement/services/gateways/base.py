# Overview: Canonical payment event and the adapter interface every gateway implements.

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from ...time_utils import parse_iso_datetime, utcnow
from ...validation import ValidationError


OUTCOME_PAID = "paid"
OUTCOME_FAILED = "failed"


class GatewaySignatureError(ValidationError):
    """Callback signature missing or wrong. Nothing was looked up."""


class GatewayPayloadError(ValidationError):
    """Callback body could not be translated into a PaymentEvent."""


class BillCreationError(RuntimeError):
    """The provider refused or failed to create a hosted bill."""


@dataclass(frozen=True)
class PaymentEvent:
    """
    Provider-neutral payment truth.

    external_id is the provider's bill/transaction id and, together with
    provider, the idempotency key. reference is our own Payment.reference
    when the provider echoes it back.
    """
    provider: str
    external_id: Optional[str]
    reference: Optional[str]
    amount_cents: Optional[int]
    outcome: str
    occurred_at: datetime

    @property
    def paid(self) -> bool:
        return self.outcome == OUTCOME_PAID


@dataclass(frozen=True)
class Bill:
    external_id: str
    payment_url: str


class GatewayAdapter:
    """
    One payment provider.

    Subclasses set name and signature_header and implement _secret(),
    parse() and create_bill(). The reconciliation engine only ever sees
    PaymentEvent.
    """
    name = ""
    signature_header = "X-Signature"

    def _secret(self) -> str:
        raise NotImplementedError

    def verify_signature(self, raw: bytes, headers: Mapping[str, str]) -> bool:
        """HMAC-SHA256 hex of the raw body, compared in constant time."""
        secret = self._secret()
        signature = headers.get(self.signature_header)
        if not secret or not signature:
            return False
        digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
        # Bytes on both sides: str compare_digest refuses non-ASCII input
        return hmac.compare_digest(digest.encode("ascii"), signature.strip().lower().encode("utf-8", "replace"))

    def check_signature(self, raw: bytes, headers: Mapping[str, str]) -> None:
        if not self.verify_signature(raw, headers):
            raise GatewaySignatureError(f"{self.name}: invalid or missing signature")

    def sign(self, raw: bytes) -> str:
        """Signature a well-behaved provider would send for raw."""
        return hmac.new(self._secret().encode("utf-8"), raw, hashlib.sha256).hexdigest()

    def parse(self, raw: bytes) -> PaymentEvent:
        raise NotImplementedError

    def create_bill(self, payment, orders) -> Bill:
        raise NotImplementedError

    # Helpers shared by the JSON providers

    def _load_json(self, raw: bytes) -> dict:
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise GatewayPayloadError(f"{self.name}: body is not valid JSON")
        if not isinstance(data, dict):
            raise GatewayPayloadError(f"{self.name}: body must be a JSON object")
        return data

    def _cents(self, value, field: str) -> Optional[int]:
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise GatewayPayloadError(f"{self.name}: {field} must be an integer amount in cents")
        try:
            return int(str(value).strip())
        except ValueError:
            raise GatewayPayloadError(f"{self.name}: {field} must be an integer amount in cents")

    def _timestamp(self, value) -> datetime:
        if value in (None, ""):
            return utcnow()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value, timezone.utc).replace(tzinfo=None)
        try:
            return parse_iso_datetime(str(value))
        except ValueError:
            raise GatewayPayloadError(f"{self.name}: invalid timestamp '{value}'")
