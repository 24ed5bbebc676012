# Overview: Billplz hosted-bill adapter (v3 bills API).

from __future__ import annotations

import requests
from flask import current_app

from .base import (
    Bill,
    BillCreationError,
    GatewayAdapter,
    GatewayPayloadError,
    OUTCOME_FAILED,
    OUTCOME_PAID,
    PaymentEvent,
)


LIVE_API_URL = "https://www.billplz.com/api/v3"
SANDBOX_API_URL = "https://www.billplz-sandbox.com/api/v3"


class BillplzAdapter(GatewayAdapter):
    """
    Callback body (JSON):
        {"id": "8X0Iyzaw", "paid": "true", "state": "paid",
         "paid_amount": 5000, "paid_at": "2024-01-01T10:00:00+08:00",
         "reference_1": "PAY-ABCDEF1234"}

    Older test callbacks use billplz_id / billplz_paid / billplz_paid_amount /
    billplz_paid_at; both spellings are accepted.
    """
    name = "billplz"
    signature_header = "X-Signature"

    def _secret(self) -> str:
        return current_app.config.get("BILLPLZ_X_SIGNATURE_KEY", "")

    def _api_url(self) -> str:
        return SANDBOX_API_URL if current_app.config.get("BILLPLZ_SANDBOX") else LIVE_API_URL

    def parse(self, raw: bytes) -> PaymentEvent:
        data = self._load_json(raw)

        external_id = data.get("id") or data.get("billplz_id")
        if not external_id:
            raise GatewayPayloadError("billplz: missing bill id")

        paid = data.get("paid", data.get("billplz_paid"))
        state = str(data.get("state") or "").lower()
        if paid is None and not state:
            raise GatewayPayloadError("billplz: missing paid flag")
        is_paid = str(paid).lower() == "true" or state == "paid"

        amount = data.get("paid_amount", data.get("billplz_paid_amount", data.get("amount")))
        return PaymentEvent(
            provider=self.name,
            external_id=str(external_id),
            reference=data.get("reference_1") or None,
            amount_cents=self._cents(amount, "paid_amount"),
            outcome=OUTCOME_PAID if is_paid else OUTCOME_FAILED,
            occurred_at=self._timestamp(data.get("paid_at") or data.get("billplz_paid_at")),
        )

    def create_bill(self, payment, orders) -> Bill:
        config = current_app.config
        api_key = config.get("BILLPLZ_API_KEY")
        collection_id = config.get("BILLPLZ_COLLECTION_ID")
        if not api_key or not collection_id:
            raise BillCreationError("BILLPLZ_API_KEY / BILLPLZ_COLLECTION_ID not set")

        first = orders[0]
        base_url = config["PUBLIC_BASE_URL"].rstrip("/")
        payload = {
            "collection_id": collection_id,
            "email": first.buyer_email,
            "mobile": first.phone,
            "name": first.buyer_name,
            "amount": payment.amount_cents,
            "description": f"Payment {payment.reference} ({len(orders)} item(s))"[:200],
            "callback_url": f"{base_url}/api/payments/webhooks/{self.name}",
            "redirect_url": f"{base_url}/payment/success?reference={payment.reference}",
            "reference_1_label": "Reference",
            "reference_1": payment.reference,
        }
        try:
            r = requests.post(
                f"{self._api_url()}/bills",
                auth=(api_key, ""),
                json=payload,
                timeout=config["GATEWAY_TIMEOUT_SECONDS"],
            )
            j = r.json() if r.content else {}
        except (requests.RequestException, ValueError) as e:
            raise BillCreationError(f"billplz: {e}")

        if not 200 <= r.status_code < 300 or not j.get("id"):
            message = (j.get("error") or {}).get("message") if isinstance(j.get("error"), dict) else None
            raise BillCreationError(f"billplz: {message or f'HTTP {r.status_code}'}")
        return Bill(external_id=str(j["id"]), payment_url=j.get("url", ""))
