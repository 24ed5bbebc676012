import pytest

from settlement.extensions import db
from settlement.models import NotificationOutbox, Order, Payment, Product
from settlement.services import checkout_service
from settlement.services.checkout_service import CheckoutError
from settlement.services.gateways import BillCreationError, get_adapter
from settlement.services.ledger_service import get_order_history
from settlement.services.notification_service import sent_messages
from settlement.services.stock_service import InsufficientStock
from settlement.validation import NotFoundError, ValidationError

from conftest import BUYER


def _body(product_id, quantity=1, **overrides):
    body = {
        "items": [{"product_id": product_id, "quantity": quantity}],
        "buyer_name": BUYER["name"],
        "buyer_email": BUYER["email"],
        "phone": BUYER["phone"],
        "shipping_address": BUYER["shipping_address"],
        "payment_method": "sandbox",
    }
    body.update(overrides)
    return body


def test_checkout_holds_stock_and_opens_payment(make_product, checkout, fresh):
    product = make_product(quantity=5, price_cents=2500, shipping_cents=800)
    payment, (order,) = checkout(product.id, quantity=2)

    assert payment.reference.startswith("PAY-")
    assert len(payment.reference) == 14
    assert payment.status == "pending"
    assert payment.amount_cents == 2 * 2500 + 800
    assert payment.external_id == f"SBX-{payment.reference}"
    assert payment.payment_url.endswith(payment.reference)

    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.stock_state == "held"
    assert order.expires_at is not None
    assert order.total_amount_cents == payment.amount_cents

    p = fresh(Product, product.id)
    assert p.quantity == 5
    assert p.reserved_quantity == 2

    history = get_order_history(order.id)
    assert len(history) == 1
    assert history[0].status == "pending"


def test_checkout_multiple_items_share_one_payment(make_product, checkout):
    a = make_product(quantity=3, price_cents=1000, name="Songket")
    b = make_product(quantity=3, price_cents=2000, name="Tudung")

    payment, orders = checkout(None, items=[
        {"product_id": a.id, "quantity": 1},
        {"product_id": b.id, "quantity": 2},
    ])

    assert len(orders) == 2
    assert {o.payment_id for o in orders} == {payment.id}
    assert payment.amount_cents == 1000 + 4000


def test_second_buyer_cannot_take_the_last_unit(make_product, checkout, fresh):
    product = make_product(quantity=1)
    checkout(product.id)

    with pytest.raises(InsufficientStock):
        checkout(product.id, buyer={**BUYER, "email": "second@buyer.test"})
    db.session.rollback()

    assert fresh(Product, product.id).reserved_quantity == 1
    assert db.session.query(Order).count() == 1
    assert db.session.query(Payment).count() == 1


def test_items_from_two_sellers_are_rejected(make_product, other_seller):
    a = make_product()
    b = make_product(seller_id=other_seller.id)

    with pytest.raises(ValidationError):
        checkout_service.create_checkout(
            items=[{"product_id": a.id, "quantity": 1}, {"product_id": b.id, "quantity": 1}],
            buyer=dict(BUYER),
            payment_method="sandbox",
        )
    assert db.session.query(Payment).count() == 0


def test_unknown_gateway_is_not_found(product):
    with pytest.raises(NotFoundError):
        checkout_service.create_checkout(
            items=[{"product_id": product.id, "quantity": 1}],
            buyer=dict(BUYER),
            payment_method="paypal",
        )


def test_manual_receipt_checkout_has_no_bill(product, checkout):
    payment, (order,) = checkout(product.id, payment_method="manual_receipt")

    assert payment.payment_method == "manual_receipt"
    assert payment.external_id is None
    assert payment.payment_url is None
    assert order.payment_method == "manual_receipt"


def test_order_placed_emails_go_to_buyer_and_seller(product, checkout, seller):
    checkout(product.id)

    recipients = sorted(m["to"] for m in sent_messages())
    assert recipients == sorted([BUYER["email"], seller.email])


def test_bill_failure_cancels_orders_and_releases_holds(product, monkeypatch, fresh):
    adapter = get_adapter("sandbox")

    def broken_bill(payment, orders):
        raise BillCreationError("sandbox: HTTP 503")

    monkeypatch.setattr(adapter, "create_bill", broken_bill)

    with pytest.raises(CheckoutError) as exc:
        checkout_service.create_checkout(
            items=[{"product_id": product.id, "quantity": 3}],
            buyer=dict(BUYER),
            payment_method="sandbox",
        )

    order = fresh(Order, exc.value.order_ids[0])
    assert order.status == "cancelled"
    assert order.payment_status == "failed"
    assert order.stock_state == "released"
    assert order.payment.status == "failed"
    assert order.payment.settled_via == "cancellation"
    assert fresh(Product, product.id).reserved_quantity == 0


def test_bill_failure_only_tells_buyer_about_cancellation(product, monkeypatch):
    def broken_bill(payment, orders):
        raise BillCreationError("sandbox: HTTP 503")

    monkeypatch.setattr(get_adapter("sandbox"), "create_bill", broken_bill)

    with pytest.raises(CheckoutError):
        checkout_service.create_checkout(
            items=[{"product_id": product.id, "quantity": 1}],
            buyer=dict(BUYER),
            payment_method="sandbox",
        )

    templates = [row.template for row in db.session.query(NotificationOutbox).all()]
    assert templates == ["order_cancelled_buyer"]
    assert [m["to"] for m in sent_messages()] == [BUYER["email"]]


# =============================================================================
# HTTP
# =============================================================================

def test_checkout_route_created(client, product):
    resp = client.post("/api/checkout", json=_body(product.id, quantity=2))

    assert resp.status_code == 201
    data = resp.get_json()
    assert data["payment"]["status"] == "pending"
    assert data["orders"][0]["quantity"] == 2
    assert data["orders"][0]["reference"] == data["payment"]["reference"]


def test_checkout_route_insufficient_stock(client, make_product):
    product = make_product(quantity=1)

    assert client.post("/api/checkout", json=_body(product.id)).status_code == 201
    resp = client.post("/api/checkout", json=_body(product.id, buyer_email="late@buyer.test"))

    assert resp.status_code == 409
    assert resp.get_json()["available"] == 0


def test_checkout_route_validation(client, product):
    assert client.post("/api/checkout", json=_body(product.id, quantity=0)).status_code == 400
    assert client.post("/api/checkout", json=_body(product.id, buyer_email="nope")).status_code == 400
    assert client.post("/api/checkout", json={"items": []}).status_code == 400
    assert client.post("/api/checkout", json=_body(987654)).status_code == 404


def test_checkout_route_bill_failure_is_502(client, product, monkeypatch):
    def broken_bill(payment, orders):
        raise BillCreationError("sandbox: timeout")

    monkeypatch.setattr(get_adapter("sandbox"), "create_bill", broken_bill)
    resp = client.post("/api/checkout", json=_body(product.id))

    assert resp.status_code == 502
    assert resp.get_json()["reference"].startswith("PAY-")


def test_payment_lookup(client, product, checkout):
    payment, _ = checkout(product.id)

    resp = client.get(f"/api/payments/{payment.reference}")
    assert resp.status_code == 200
    assert resp.get_json()["payment"]["reference"] == payment.reference
    assert client.get("/api/payments/PAY-NOPE").status_code == 404
