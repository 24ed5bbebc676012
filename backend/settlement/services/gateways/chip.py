# Overview: CHIP Collect purchase adapter.

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


_FAILED_STATUSES = {"error", "failed", "cancelled", "expired", "blocked", "payment_failed"}


class ChipAdapter(GatewayAdapter):
    """
    Callback body (JSON):
        {"id": "d6a1...", "status": "paid", "reference": "PAY-ABCDEF1234",
         "amount": 5000, "paid_at": 1700000000}

    CHIP also nests the total as purchase.total; it is used when amount is absent.
    """
    name = "chip"
    signature_header = "X-Signature"

    def _secret(self) -> str:
        return current_app.config.get("CHIP_WEBHOOK_SECRET", "")

    def parse(self, raw: bytes) -> PaymentEvent:
        data = self._load_json(raw)

        external_id = data.get("id")
        status = str(data.get("status") or "").lower()
        if not external_id or not status:
            raise GatewayPayloadError("chip: missing id or status")

        if status == "paid":
            outcome = OUTCOME_PAID
        elif status in _FAILED_STATUSES:
            outcome = OUTCOME_FAILED
        else:
            raise GatewayPayloadError(f"chip: status '{status}' is not a final outcome")

        amount = data.get("amount")
        if amount is None and isinstance(data.get("purchase"), dict):
            amount = data["purchase"].get("total")

        return PaymentEvent(
            provider=self.name,
            external_id=str(external_id),
            reference=data.get("reference") or None,
            amount_cents=self._cents(amount, "amount"),
            outcome=outcome,
            occurred_at=self._timestamp(data.get("paid_at") or data.get("updated_on")),
        )

    def create_bill(self, payment, orders) -> Bill:
        config = current_app.config
        api_key = config.get("CHIP_API_KEY")
        brand_id = config.get("CHIP_BRAND_ID")
        if not api_key or not brand_id:
            raise BillCreationError("CHIP_API_KEY / CHIP_BRAND_ID not set")

        first = orders[0]
        base_url = config["PUBLIC_BASE_URL"].rstrip("/")
        payload = {
            "brand_id": brand_id,
            "reference": payment.reference,
            "client": {"email": first.buyer_email, "full_name": first.buyer_name, "phone": first.phone},
            "purchase": {
                "currency": payment.currency,
                "products": [
                    {
                        "name": o.product.name if o.product else f"Order {o.id}",
                        "quantity": o.quantity,
                        "price": o.unit_price_cents,
                    }
                    for o in orders
                ],
                "total_override": payment.amount_cents,
            },
            "success_callback": f"{base_url}/api/payments/webhooks/{self.name}",
            "success_redirect": f"{base_url}/payment/success?reference={payment.reference}",
        }
        try:
            r = requests.post(
                f"{config['CHIP_API_BASE_URL'].rstrip('/')}/purchases/",
                headers={"Authorization": f"Bearer {api_key}"},
                json=payload,
                timeout=config["GATEWAY_TIMEOUT_SECONDS"],
            )
            j = r.json() if r.content else {}
        except (requests.RequestException, ValueError) as e:
            raise BillCreationError(f"chip: {e}")

        if not 200 <= r.status_code < 300 or not j.get("id"):
            raise BillCreationError(f"chip: HTTP {r.status_code}")
        return Bill(external_id=str(j["id"]), payment_url=j.get("checkout_url") or j.get("payment_url", ""))
