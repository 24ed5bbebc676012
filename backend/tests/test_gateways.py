import json
from datetime import datetime

import pytest
import requests

from settlement.services.gateways import (
    BillCreationError,
    GatewayPayloadError,
    GatewaySignatureError,
    UnknownGateway,
    get_adapter,
    payment_methods,
)


def _raw(body):
    return json.dumps(body).encode("utf-8")


def test_registry():
    assert get_adapter("Billplz").name == "billplz"
    assert get_adapter("chip").name == "chip"
    assert "manual_receipt" in payment_methods()
    with pytest.raises(UnknownGateway):
        get_adapter("paypal")


def test_signature_round_trip_and_tamper(app):
    adapter = get_adapter("billplz")
    raw = _raw({"id": "abc", "paid": "true"})
    signature = adapter.sign(raw)

    assert adapter.verify_signature(raw, {"X-Signature": signature})
    assert adapter.verify_signature(raw, {"X-Signature": signature.upper()})
    assert not adapter.verify_signature(raw + b" ", {"X-Signature": signature})
    assert not adapter.verify_signature(raw, {})


def test_non_ascii_signature_is_refused(app):
    adapter = get_adapter("sandbox")
    raw = _raw({"id": "x"})
    headers = {adapter.signature_header: "é" * 64}

    assert not adapter.verify_signature(raw, headers)
    with pytest.raises(GatewaySignatureError):
        adapter.check_signature(raw, headers)
    adapter.check_signature(raw, {adapter.signature_header: adapter.sign(raw)})


def test_signature_fails_closed_without_secret(app):
    adapter = get_adapter("chip")
    raw = _raw({"id": "x"})
    signature = adapter.sign(raw)
    original = app.config["CHIP_WEBHOOK_SECRET"]
    app.config["CHIP_WEBHOOK_SECRET"] = ""
    try:
        assert not adapter.verify_signature(raw, {"X-Signature": signature})
    finally:
        app.config["CHIP_WEBHOOK_SECRET"] = original


def test_billplz_parse_current_and_legacy_fields(app):
    adapter = get_adapter("billplz")

    event = adapter.parse(_raw({
        "id": "8X0Iyzaw", "paid": "true", "state": "paid", "paid_amount": 5000,
        "paid_at": "2026-01-01T10:00:00+08:00", "reference_1": "PAY-ABCDEF1234",
    }))
    assert event.paid
    assert event.external_id == "8X0Iyzaw"
    assert event.reference == "PAY-ABCDEF1234"
    assert event.amount_cents == 5000
    assert event.occurred_at == datetime(2026, 1, 1, 2, 0, 0)

    legacy = adapter.parse(_raw({"billplz_id": "old1", "billplz_paid": "false", "billplz_paid_amount": "1200"}))
    assert not legacy.paid
    assert legacy.external_id == "old1"
    assert legacy.amount_cents == 1200


def test_billplz_rejects_incomplete_payloads(app):
    adapter = get_adapter("billplz")
    with pytest.raises(GatewayPayloadError):
        adapter.parse(b"not json")
    with pytest.raises(GatewayPayloadError):
        adapter.parse(_raw({"paid": "true"}))
    with pytest.raises(GatewayPayloadError):
        adapter.parse(_raw({"id": "x"}))
    with pytest.raises(GatewayPayloadError):
        adapter.parse(_raw({"id": "x", "paid": "true", "paid_amount": "50.00"}))


def test_chip_parse(app):
    adapter = get_adapter("chip")

    paid = adapter.parse(_raw({
        "id": "d6a1", "status": "paid", "reference": "PAY-1", "purchase": {"total": 4200}, "paid_at": 1767225600,
    }))
    assert paid.paid
    assert paid.amount_cents == 4200
    assert paid.occurred_at == datetime(2026, 1, 1, 0, 0, 0)

    failed = adapter.parse(_raw({"id": "d6a2", "status": "expired", "amount": 4200}))
    assert not failed.paid

    with pytest.raises(GatewayPayloadError):
        adapter.parse(_raw({"id": "d6a3", "status": "created"}))


def test_sandbox_parse_requires_an_identifier(app):
    adapter = get_adapter("sandbox")
    with pytest.raises(GatewayPayloadError):
        adapter.parse(_raw({"outcome": "paid"}))


class _FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.content = json.dumps(body).encode("utf-8")

    def json(self):
        return self._body


class _FakePayment:
    reference = "PAY-ABCDEF1234"
    amount_cents = 5000
    currency = "MYR"


class _FakeOrder:
    id = 1
    buyer_email = "nur@buyer.test"
    buyer_name = "Nur"
    phone = "0123456789"
    quantity = 2
    unit_price_cents = 2500
    product = None


def test_billplz_create_bill(app, monkeypatch):
    app.config.update(BILLPLZ_API_KEY="key", BILLPLZ_COLLECTION_ID="col")
    calls = {}

    def fake_post(url, **kwargs):
        calls["url"] = url
        calls["json"] = kwargs["json"]
        calls["auth"] = kwargs["auth"]
        return _FakeResponse(200, {"id": "bill123", "url": "https://billplz.test/bills/bill123"})

    monkeypatch.setattr(requests, "post", fake_post)
    try:
        bill = get_adapter("billplz").create_bill(_FakePayment(), [_FakeOrder()])
    finally:
        app.config.update(BILLPLZ_API_KEY="", BILLPLZ_COLLECTION_ID="")

    assert bill.external_id == "bill123"
    assert bill.payment_url.endswith("bill123")
    assert calls["url"].endswith("/bills")
    assert calls["auth"] == ("key", "")
    assert calls["json"]["amount"] == 5000
    assert calls["json"]["reference_1"] == "PAY-ABCDEF1234"
    assert calls["json"]["callback_url"].endswith("/api/payments/webhooks/billplz")


def test_chip_create_bill_failure(app, monkeypatch):
    app.config.update(CHIP_API_KEY="key", CHIP_BRAND_ID="brand")

    def fake_post(url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "post", fake_post)
    try:
        with pytest.raises(BillCreationError):
            get_adapter("chip").create_bill(_FakePayment(), [_FakeOrder()])
    finally:
        app.config.update(CHIP_API_KEY="", CHIP_BRAND_ID="")


def test_create_bill_without_credentials(app):
    with pytest.raises(BillCreationError):
        get_adapter("billplz").create_bill(_FakePayment(), [_FakeOrder()])
