from settlement.extensions import db
from settlement.models import Order, Payment, Product


def _sandbox_body(payment, outcome="paid", **overrides):
    body = {
        "external_id": payment.external_id,
        "reference": payment.reference,
        "amount_cents": payment.amount_cents,
        "outcome": outcome,
        "occurred_at": "2026-01-01T10:00:00Z",
    }
    body.update(overrides)
    return body


def test_paid_callback_settles_order(post_webhook, product, checkout, fresh):
    payment, (order,) = checkout(product.id, quantity=2)

    resp = post_webhook("sandbox", _sandbox_body(payment))

    assert resp.status_code == 200
    assert resp.get_json() == {
        "success": True,
        "result": "applied",
        "reference": payment.reference,
        "status": "completed",
    }
    assert fresh(Order, order.id).status == "paid"
    assert fresh(Product, product.id).quantity == 8


def test_replayed_callback_is_acknowledged_once(post_webhook, product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    body = _sandbox_body(payment)

    assert post_webhook("sandbox", body).get_json()["result"] == "applied"
    replay = post_webhook("sandbox", body)

    assert replay.status_code == 200
    assert replay.get_json()["result"] == "duplicate"
    assert fresh(Product, product.id).quantity == 9


def test_bad_signature_is_rejected(post_webhook, product, checkout, fresh):
    payment, (order,) = checkout(product.id)

    resp = post_webhook("sandbox", _sandbox_body(payment), signature="0" * 64)

    assert resp.status_code == 400
    assert fresh(Order, order.id).status == "pending"
    assert fresh(Payment, payment.id).status == "pending"


def test_missing_signature_is_rejected(client, product, checkout):
    payment, _ = checkout(product.id)

    resp = client.post("/api/payments/webhooks/sandbox", json=_sandbox_body(payment))
    assert resp.status_code == 400


def test_non_ascii_signature_is_rejected(post_webhook, product, checkout, fresh):
    payment, (order,) = checkout(product.id)

    resp = post_webhook("sandbox", _sandbox_body(payment), signature="é" * 64)

    assert resp.status_code == 400
    assert fresh(Order, order.id).status == "pending"


def test_malformed_payload_is_rejected(post_webhook, product, checkout):
    payment, _ = checkout(product.id)

    resp = post_webhook("sandbox", _sandbox_body(payment, outcome="maybe"))
    assert resp.status_code == 400


def test_unknown_payment_is_404(post_webhook, product, checkout):
    payment, _ = checkout(product.id)

    resp = post_webhook("sandbox", _sandbox_body(payment, external_id="SBX-NOPE", reference="PAY-NOPE"))
    assert resp.status_code == 404


def test_unknown_provider_is_404(client):
    resp = client.post("/api/payments/webhooks/paypal", json={"id": "x"})
    assert resp.status_code == 404


def test_conflicting_callback_is_acknowledged_as_anomaly(post_webhook, product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    post_webhook("sandbox", _sandbox_body(payment, outcome="paid"))

    resp = post_webhook("sandbox", _sandbox_body(payment, outcome="failed"))

    assert resp.status_code == 200
    assert resp.get_json()["result"] == "anomaly"
    assert fresh(Order, order.id).status == "paid"
    assert fresh(Payment, payment.id).needs_review is True


def test_billplz_callback_end_to_end(post_webhook, product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    # Pretend the bill was opened with Billplz
    payment.payment_method = "billplz"
    payment.external_id = "8X0Iyzaw"
    order.payment_method = "billplz"
    db.session.commit()

    resp = post_webhook("billplz", {
        "id": "8X0Iyzaw",
        "paid": "true",
        "state": "paid",
        "paid_amount": payment.amount_cents,
        "paid_at": "2026-01-01T10:00:00+08:00",
        "reference_1": payment.reference,
    })

    assert resp.status_code == 200
    assert fresh(Order, order.id).status == "paid"
    assert fresh(Payment, payment.id).settled_via == "billplz"
