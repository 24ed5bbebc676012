import io

import pytest

from settlement.extensions import db
from settlement.models import NotificationOutbox, Order, Payment, Product, Receipt
from settlement.services import reconciliation_service, receipt_service
from settlement.services.gateways import OUTCOME_PAID, PaymentEvent
from settlement.services.receipt_service import ReceiptAlreadyReviewed, ReceiptError
from settlement.services.stock_service import InsufficientStock
from settlement.time_utils import utcnow
from settlement.validation import ConflictError, NotFoundError


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _upload_for(order, **overrides):
    kwargs = dict(seller_id=order.seller_id, image=PNG, content_type="image/png", order_id=order.id)
    kwargs.update(overrides)
    return receipt_service.upload_receipt(**kwargs)


def _qr_receipt(seller, product, quantity=2, amount_cents=5000):
    return receipt_service.upload_receipt(
        seller_id=seller.id,
        image=PNG,
        content_type="image/jpeg",
        amount_cents=amount_cents,
        buyer_name="Walk-in Buyer",
        buyer_email="walkin@buyer.test",
        buyer_phone="0199999999",
        shipping_address="Lot 5, Jalan Tun Razak",
        product_id=product.id,
        quantity=quantity,
    )


# =============================================================================
# UPLOAD
# =============================================================================

def test_upload_moves_order_to_pending_review(product, checkout, fresh):
    payment, (order,) = checkout(product.id, payment_method="manual_receipt")

    receipt = _upload_for(order)

    assert receipt.status == "pending"
    assert receipt.payment_type == "order_payment"
    assert receipt.amount_cents == payment.amount_cents
    order = fresh(Order, order.id)
    assert order.status == "pending"
    assert order.payment_status == "pending_review"

    email = db.session.query(NotificationOutbox).filter_by(
        template="receipt_uploaded_seller", receipt_id=receipt.id
    ).one()
    assert receipt_service.action_token(receipt.id) in email.text_body


def test_second_pending_receipt_is_refused(product, checkout):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    _upload_for(order)

    with pytest.raises(ConflictError):
        _upload_for(order)
    db.session.rollback()


def test_upload_rejects_non_images_and_oversize(product, checkout, app):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")

    with pytest.raises(ReceiptError):
        _upload_for(order, content_type="application/pdf")
    with pytest.raises(ReceiptError):
        _upload_for(order, image=b"")
    with pytest.raises(ReceiptError):
        _upload_for(order, image=b"x" * (app.config["RECEIPT_MAX_BYTES"] + 1))


def test_upload_for_another_sellers_order(product, checkout, other_seller):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")

    with pytest.raises(ReceiptError):
        _upload_for(order, seller_id=other_seller.id)
    db.session.rollback()


def test_upload_for_paid_order_is_refused(product, checkout):
    payment, (order,) = checkout(product.id)
    reconciliation_service.apply_payment_event(PaymentEvent(
        provider="sandbox",
        external_id=payment.external_id,
        reference=None,
        amount_cents=payment.amount_cents,
        outcome=OUTCOME_PAID,
        occurred_at=utcnow(),
    ))

    with pytest.raises(ConflictError):
        _upload_for(order)
    db.session.rollback()


def test_qr_upload_requires_product_fields(seller):
    with pytest.raises(ReceiptError):
        receipt_service.upload_receipt(seller_id=seller.id, image=PNG, content_type="image/png", amount_cents=100)


# =============================================================================
# DECISIONS
# =============================================================================

def test_approve_settles_order_and_commits_stock(product, checkout, fresh):
    payment, (order,) = checkout(product.id, quantity=3, payment_method="manual_receipt")
    receipt = _upload_for(order)

    outcome = reconciliation_service.apply_receipt_decision(receipt.id, "approved", seller_id=order.seller_id)

    assert outcome == {
        "result": "applied",
        "status": "approved",
        "orderId": order.id,
        "receipt": outcome["receipt"],
    }
    order = fresh(Order, order.id)
    assert (order.status, order.payment_status) == ("paid", "completed")
    p = fresh(Product, product.id)
    assert p.quantity == 7
    assert p.reserved_quantity == 0
    payment = fresh(Payment, payment.id)
    assert payment.status == "completed"
    assert payment.settled_via == "receipt"


def test_reject_fails_order_and_releases_hold(product, checkout, fresh):
    payment, (order,) = checkout(product.id, quantity=3, payment_method="manual_receipt")
    receipt = _upload_for(order)

    outcome = reconciliation_service.apply_receipt_decision(receipt.id, "rejected", notes="Transfer not found")

    assert outcome["status"] == "rejected"
    order = fresh(Order, order.id)
    assert (order.status, order.payment_status) == ("payment_failed", "rejected")
    assert order.stock_state == "released"
    assert fresh(Product, product.id).available_quantity == 10
    assert fresh(Payment, payment.id).status == "failed"
    assert fresh(Receipt, receipt.id).seller_notes == "Transfer not found"


def test_second_decision_is_refused(product, checkout, fresh):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)
    reconciliation_service.apply_receipt_decision(receipt.id, "approved")

    with pytest.raises(ReceiptAlreadyReviewed) as exc:
        reconciliation_service.apply_receipt_decision(receipt.id, "rejected")
    db.session.rollback()

    assert exc.value.status == "approved"
    assert fresh(Receipt, receipt.id).status == "approved"
    assert fresh(Order, order.id).status == "paid"
    assert fresh(Product, product.id).quantity == 9


def test_decision_by_another_seller_is_not_found(product, checkout, other_seller):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)

    with pytest.raises(NotFoundError):
        reconciliation_service.apply_receipt_decision(receipt.id, "approved", seller_id=other_seller.id)
    db.session.rollback()


def test_invalid_action(product, checkout):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)

    with pytest.raises(ReceiptError):
        reconciliation_service.apply_receipt_decision(receipt.id, "maybe")
    db.session.rollback()


def test_approval_after_gateway_failure_settles_payment(product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    reconciliation_service.apply_payment_event(PaymentEvent(
        provider="sandbox",
        external_id=payment.external_id,
        reference=None,
        amount_cents=payment.amount_cents,
        outcome="failed",
        occurred_at=utcnow(),
    ))
    assert fresh(Payment, payment.id).status == "pending"
    receipt = _upload_for(order)

    outcome = reconciliation_service.apply_receipt_decision(receipt.id, "approved")

    assert outcome["result"] == "applied"
    assert fresh(Order, order.id).status == "paid"
    payment = fresh(Payment, payment.id)
    assert payment.status == "completed"
    assert payment.settled_via == "receipt"


def test_decision_on_resolved_order_is_superseded(product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    receipt = _upload_for(order)
    # Gateway money lands while the seller is still looking at the receipt
    reconciliation_service.apply_payment_event(PaymentEvent(
        provider="sandbox",
        external_id=payment.external_id,
        reference=None,
        amount_cents=payment.amount_cents,
        outcome=OUTCOME_PAID,
        occurred_at=utcnow(),
    ))

    outcome = reconciliation_service.apply_receipt_decision(receipt.id, "rejected")

    assert outcome["result"] == "superseded"
    assert outcome["status"] == "rejected"
    order = fresh(Order, order.id)
    assert order.status == "paid"
    assert fresh(Product, product.id).quantity == 9


# =============================================================================
# QR PAYMENTS
# =============================================================================

def test_qr_approval_creates_paid_order(seller, product, fresh):
    receipt = _qr_receipt(seller, product, quantity=2, amount_cents=5000)
    assert receipt.order_id is None
    assert receipt.payment_type == "qr_payment"

    outcome = reconciliation_service.apply_receipt_decision(receipt.id, "approved", seller_id=seller.id)

    order = fresh(Order, outcome["orderId"])
    assert order.status == "paid"
    assert order.payment_status == "completed"
    assert order.quantity == 2
    assert order.total_amount_cents == 5000
    assert order.buyer_email == "walkin@buyer.test"
    assert fresh(Receipt, receipt.id).order_id == order.id
    assert order.payment.payment_method == "qr_payment"
    assert order.payment.status == "completed"
    assert fresh(Product, product.id).quantity == 8


def test_qr_approval_without_stock_changes_nothing(seller, make_product, fresh):
    product = make_product(quantity=1)
    receipt = _qr_receipt(seller, product, quantity=2)

    with pytest.raises(InsufficientStock):
        reconciliation_service.apply_receipt_decision(receipt.id, "approved")
    db.session.rollback()

    assert fresh(Receipt, receipt.id).status == "pending"
    assert db.session.query(Order).count() == 0
    assert fresh(Product, product.id).quantity == 1


def test_qr_rejection_creates_no_order(seller, product, fresh):
    receipt = _qr_receipt(seller, product)

    outcome = reconciliation_service.apply_receipt_decision(receipt.id, "rejected")

    assert outcome["orderId"] is None
    assert db.session.query(Order).count() == 0
    assert fresh(Product, product.id).quantity == 10


# =============================================================================
# HTTP
# =============================================================================

def test_upload_route(client, product, checkout, fresh):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")

    resp = client.post(
        "/api/receipts",
        data={
            "seller_id": str(order.seller_id),
            "order_id": str(order.id),
            "receipt": (io.BytesIO(PNG), "transfer.png", "image/png"),
        },
        content_type="multipart/form-data",
    )

    assert resp.status_code == 201
    assert resp.get_json()["receipt"]["order_id"] == order.id
    assert fresh(Order, order.id).payment_status == "pending_review"


def test_upload_route_without_file(client, seller):
    resp = client.post("/api/receipts", data={"seller_id": str(seller.id)}, content_type="multipart/form-data")
    assert resp.status_code == 400


def test_decision_route(client, product, checkout, seller_headers):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)

    resp = client.post(
        "/api/receipts/decision",
        json={"receiptId": receipt.id, "action": "approved"},
        headers=seller_headers,
    )
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "approved", "orderId": order.id, "result": "applied"}

    again = client.post(
        "/api/receipts/decision",
        json={"receiptId": receipt.id, "action": "rejected"},
        headers=seller_headers,
    )
    assert again.status_code == 409
    assert again.get_json()["status"] == "approved"


def test_decision_route_requires_seller_token(client, product, checkout):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)

    resp = client.post("/api/receipts/decision", json={"receiptId": receipt.id, "action": "approved"})
    assert resp.status_code == 401
    forged = client.post(
        "/api/receipts/decision",
        json={"receiptId": receipt.id, "action": "approved"},
        headers={"Authorization": f"Bearer seller:{order.seller_id}:deadbeef"},
    )
    assert forged.status_code == 401


def test_email_action_with_valid_token(client, product, checkout, fresh):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)
    token = receipt_service.action_token(receipt.id)

    resp = client.get(f"/api/receipts/email-action?receiptId={receipt.id}&action=approved&token={token}")

    assert resp.status_code == 200
    assert b"approved" in resp.data
    receipt = fresh(Receipt, receipt.id)
    assert receipt.status == "approved"
    assert receipt.reviewed_via == "email_link"


def test_email_action_with_bad_token_changes_nothing(client, product, checkout, fresh):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)
    other_token = receipt_service.action_token(receipt.id + 1)

    resp = client.get(f"/api/receipts/email-action?receiptId={receipt.id}&action=approved&token={other_token}")

    assert resp.status_code == 401
    assert fresh(Receipt, receipt.id).status == "pending"
    assert fresh(Order, order.id).payment_status == "pending_review"


def test_non_ascii_tokens_are_refused(client, product, checkout, fresh):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)

    link = client.get(f"/api/receipts/email-action?receiptId={receipt.id}&action=approved&token=%C3%A9")
    bearer = client.get(
        "/api/seller/reminder-frequency",
        headers={"Authorization": f"Bearer seller:{order.seller_id}:" + "é" * 64},
    )

    assert link.status_code == 401
    assert bearer.status_code == 401
    assert fresh(Receipt, receipt.id).status == "pending"


def test_email_action_after_dashboard_decision(client, product, checkout):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)
    reconciliation_service.apply_receipt_decision(receipt.id, "rejected")
    token = receipt_service.action_token(receipt.id)

    resp = client.get(f"/api/receipts/email-action?receiptId={receipt.id}&action=approved&token={token}")

    assert resp.status_code == 409


def test_receipt_image_route(client, product, checkout, seller_headers):
    _, (order,) = checkout(product.id, payment_method="manual_receipt")
    receipt = _upload_for(order)

    resp = client.get(f"/api/receipts/{receipt.id}/image", headers=seller_headers)

    assert resp.status_code == 200
    assert resp.mimetype == "image/png"
    assert resp.data == PNG
