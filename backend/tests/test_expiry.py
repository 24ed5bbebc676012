from datetime import timedelta

from settlement.extensions import db
from settlement.models import NotificationOutbox, Order, Payment, Product
from settlement.services import reconciliation_service, receipt_service
from settlement.services.gateways import PaymentEvent
from settlement.services.ledger_service import get_order_history
from settlement.time_utils import utcnow


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _later(minutes=10):
    return utcnow() + timedelta(minutes=minutes)


def test_expired_order_is_cancelled_and_hold_released(product, checkout, fresh):
    payment, (order,) = checkout(product.id, quantity=4)

    summary = reconciliation_service.expire_unpaid_orders(_later())

    assert summary == {"expired": [order.id], "skipped": 0, "errors": 0}
    order = fresh(Order, order.id)
    assert (order.status, order.payment_status) == ("cancelled", "failed")
    assert order.stock_state == "released"
    assert fresh(Product, product.id).available_quantity == 10
    payment = fresh(Payment, payment.id)
    assert payment.status == "failed"
    assert payment.settled_via == "expiry"
    assert get_order_history(order.id)[-1].updated_by == "system"
    assert db.session.query(NotificationOutbox).filter_by(
        template="order_cancelled_buyer", order_id=order.id
    ).count() == 1


def test_orders_inside_the_window_are_left_alone(product, checkout, fresh):
    _, (order,) = checkout(product.id)

    summary = reconciliation_service.expire_unpaid_orders(utcnow())

    assert summary["expired"] == []
    assert fresh(Order, order.id).status == "pending"


def test_receipt_under_review_suspends_expiry(product, checkout, fresh):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt_service.upload_receipt(seller_id=order.seller_id, image=PNG, content_type="image/png", order_id=order.id)

    summary = reconciliation_service.expire_unpaid_orders(_later(60))

    assert summary["expired"] == []
    assert fresh(Order, order.id).payment_status == "pending_review"
    assert fresh(Product, product.id).reserved_quantity == 1


def test_gateway_failed_order_still_expires(product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    reconciliation_service.apply_payment_event(PaymentEvent(
        provider="sandbox",
        external_id=payment.external_id,
        reference=None,
        amount_cents=payment.amount_cents,
        outcome="failed",
        occurred_at=utcnow(),
    ))

    summary = reconciliation_service.expire_unpaid_orders(_later())

    assert summary["expired"] == [order.id]
    assert fresh(Order, order.id).status == "cancelled"
    # A gateway failure leaves the payment open; expiry is what fails it
    payment = fresh(Payment, payment.id)
    assert payment.status == "failed"
    assert payment.settled_via == "expiry"


def test_sweep_is_idempotent(product, checkout):
    checkout(product.id)
    first = reconciliation_service.expire_unpaid_orders(_later())
    second = reconciliation_service.expire_unpaid_orders(_later())

    assert len(first["expired"]) == 1
    assert second == {"expired": [], "skipped": 0, "errors": 0}


def test_one_bad_order_does_not_stop_the_sweep(make_product, checkout, monkeypatch, fresh):
    a = make_product(name="Songket")
    b = make_product(name="Tudung")
    _, (order_a,) = checkout(a.id)
    _, (order_b,) = checkout(b.id)

    real_cancel = reconciliation_service.cancel_unpaid_order

    def flaky_cancel(order, **kwargs):
        if order.id == order_a.id:
            raise RuntimeError("boom")
        return real_cancel(order, **kwargs)

    monkeypatch.setattr(reconciliation_service, "cancel_unpaid_order", flaky_cancel)

    summary = reconciliation_service.expire_unpaid_orders(_later())

    assert summary["errors"] == 1
    assert summary["expired"] == [order_b.id]
    assert fresh(Order, order_a.id).status == "pending"
    assert fresh(Order, order_b.id).status == "cancelled"


def test_cron_route_requires_secret(client, cron_headers, product, checkout, fresh):
    _, (order,) = checkout(product.id)

    assert client.post("/api/cron/expire-orders").status_code == 401

    now = (_later()).isoformat() + "Z"
    resp = client.post(f"/api/cron/expire-orders?now={now}", headers=cron_headers)
    assert resp.status_code == 200
    assert resp.get_json()["expired"] == [order.id]
    assert fresh(Order, order.id).status == "cancelled"

    bad = client.post("/api/cron/expire-orders?now=yesterday", headers=cron_headers)
    assert bad.status_code == 400
