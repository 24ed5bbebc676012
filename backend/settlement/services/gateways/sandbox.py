# Overview: Local test gateway; bills are created without network access.

from __future__ import annotations

from flask import current_app

from .base import Bill, GatewayAdapter, GatewayPayloadError, OUTCOME_FAILED, OUTCOME_PAID, PaymentEvent


class SandboxAdapter(GatewayAdapter):
    """
    Callback body (JSON):
        {"external_id": "SBX-PAY-ABCDEF1234", "reference": "PAY-ABCDEF1234",
         "amount_cents": 5000, "outcome": "paid", "occurred_at": "2024-01-01T10:00:00Z"}

    Signed with SANDBOX_GATEWAY_SECRET in X-Sandbox-Signature.
    """
    name = "sandbox"
    signature_header = "X-Sandbox-Signature"

    def _secret(self) -> str:
        return current_app.config.get("SANDBOX_GATEWAY_SECRET", "")

    def parse(self, raw: bytes) -> PaymentEvent:
        data = self._load_json(raw)

        external_id = data.get("external_id")
        reference = data.get("reference")
        if not external_id and not reference:
            raise GatewayPayloadError("sandbox: external_id or reference is required")

        outcome = str(data.get("outcome") or "").lower()
        if outcome not in (OUTCOME_PAID, OUTCOME_FAILED):
            raise GatewayPayloadError("sandbox: outcome must be 'paid' or 'failed'")

        return PaymentEvent(
            provider=self.name,
            external_id=str(external_id) if external_id else None,
            reference=str(reference) if reference else None,
            amount_cents=self._cents(data.get("amount_cents"), "amount_cents"),
            outcome=outcome,
            occurred_at=self._timestamp(data.get("occurred_at")),
        )

    def create_bill(self, payment, orders) -> Bill:
        base_url = current_app.config["PUBLIC_BASE_URL"].rstrip("/")
        return Bill(
            external_id=f"SBX-{payment.reference}",
            payment_url=f"{base_url}/payment/test/{payment.reference}",
        )
