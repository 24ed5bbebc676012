from datetime import timedelta

import pytest

from settlement.extensions import db
from settlement.models import NotificationOutbox, Order, Payment, PaymentAnomaly, Product
from settlement.services import reconciliation_service
from settlement.services.gateways import OUTCOME_FAILED, OUTCOME_PAID, PaymentEvent
from settlement.services.ledger_service import get_order_history
from settlement.services.reconciliation_service import PaymentNotFound
from settlement.services.stock_service import InsufficientStock
from settlement.time_utils import utcnow

from conftest import BUYER


def _event(payment, outcome=OUTCOME_PAID, amount_cents=None, external_id=None, reference=None):
    return PaymentEvent(
        provider=payment.payment_method,
        external_id=external_id if external_id is not None else payment.external_id,
        reference=reference,
        amount_cents=payment.amount_cents if amount_cents is None else amount_cents,
        outcome=outcome,
        occurred_at=utcnow(),
    )


def _paid_entries(order_id):
    return [h for h in get_order_history(order_id) if h.status == "paid"]


def test_last_unit_scenario(make_product, checkout, fresh):
    product = make_product(quantity=1)
    payment, (order,) = checkout(product.id)

    with pytest.raises(InsufficientStock):
        checkout(product.id, buyer={**BUYER, "email": "second@buyer.test"})
    db.session.rollback()

    outcome = reconciliation_service.apply_payment_event(_event(payment))
    assert outcome["result"] == "applied"

    order = fresh(Order, order.id)
    assert order.status == "paid"
    assert order.payment_status == "completed"
    assert order.stock_state == "committed"
    assert order.paid_at is not None
    p = fresh(Product, product.id)
    assert p.quantity == 0
    assert p.reserved_quantity == 0

    # Same callback again a few seconds later
    replay = reconciliation_service.apply_payment_event(_event(payment))
    assert replay["result"] == "duplicate"

    assert fresh(Product, product.id).quantity == 0
    assert len(_paid_entries(order.id)) == 1
    payment = fresh(Payment, payment.id)
    assert payment.status == "completed"
    assert payment.paid_amount_cents == payment.amount_cents
    assert payment.settled_via == "sandbox"
    assert payment.needs_review is False


def test_duplicate_sends_no_second_confirmation(product, checkout):
    payment, (order,) = checkout(product.id)

    reconciliation_service.apply_payment_event(_event(payment))
    reconciliation_service.apply_payment_event(_event(payment))

    confirmations = db.session.query(NotificationOutbox).filter_by(
        template="payment_confirmed_buyer", order_id=order.id
    ).count()
    assert confirmations == 1


def test_unknown_payment_changes_nothing(product, checkout, fresh):
    payment, (order,) = checkout(product.id)

    with pytest.raises(PaymentNotFound):
        reconciliation_service.apply_payment_event(_event(payment, external_id="SBX-UNKNOWN"))
    db.session.rollback()

    assert fresh(Order, order.id).status == "pending"
    assert fresh(Payment, payment.id).status == "pending"


def test_reference_fallback_matches_same_provider_only(product, checkout, fresh):
    payment, (order,) = checkout(product.id)

    with pytest.raises(PaymentNotFound):
        reconciliation_service.apply_payment_event(PaymentEvent(
            provider="chip",
            external_id=None,
            reference=payment.reference,
            amount_cents=payment.amount_cents,
            outcome=OUTCOME_PAID,
            occurred_at=utcnow(),
        ))
    db.session.rollback()

    outcome = reconciliation_service.apply_payment_event(_event(payment, external_id="", reference=payment.reference))
    assert outcome["result"] == "applied"
    assert fresh(Order, order.id).status == "paid"


def test_failed_event_keeps_hold_and_notifies_buyer(product, checkout, fresh):
    payment, (order,) = checkout(product.id, quantity=2)

    outcome = reconciliation_service.apply_payment_event(_event(payment, OUTCOME_FAILED))
    assert outcome["result"] == "applied"

    order = fresh(Order, order.id)
    assert order.status == "pending"
    assert order.payment_status == "failed"
    assert order.stock_state == "held"
    assert fresh(Payment, payment.id).status == "pending"
    assert fresh(Product, product.id).reserved_quantity == 2
    assert db.session.query(NotificationOutbox).filter_by(
        template="payment_failed_buyer", order_id=order.id
    ).count() == 1


def test_conflicting_outcome_is_flagged_not_applied(product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    reconciliation_service.apply_payment_event(_event(payment))

    outcome = reconciliation_service.apply_payment_event(_event(payment, OUTCOME_FAILED))
    assert outcome["result"] == "anomaly"

    order = fresh(Order, order.id)
    assert order.status == "paid"
    payment = fresh(Payment, payment.id)
    assert payment.status == "completed"
    assert payment.needs_review is True
    anomaly = db.session.query(PaymentAnomaly).filter_by(payment_id=payment.id).one()
    assert anomaly.kind == "conflicting_outcome"
    assert anomaly.reported_outcome == "failed"


def test_paid_after_failed_attempt_settles_the_order(product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    reconciliation_service.apply_payment_event(_event(payment, OUTCOME_FAILED))

    outcome = reconciliation_service.apply_payment_event(_event(payment, OUTCOME_PAID))

    assert outcome["result"] == "applied"
    order = fresh(Order, order.id)
    assert (order.status, order.payment_status) == ("paid", "completed")
    payment = fresh(Payment, payment.id)
    assert payment.status == "completed"
    assert payment.needs_review is False
    assert fresh(Product, product.id).quantity == 9
    assert db.session.query(PaymentAnomaly).count() == 0


def test_replayed_failed_event_is_a_duplicate(product, checkout):
    payment, (order,) = checkout(product.id)
    reconciliation_service.apply_payment_event(_event(payment, OUTCOME_FAILED))

    outcome = reconciliation_service.apply_payment_event(_event(payment, OUTCOME_FAILED))

    assert outcome["result"] == "duplicate"
    assert outcome["payment"]["status"] == "pending"
    failed_entries = [h for h in get_order_history(order.id) if h.payment_status == "failed"]
    assert len(failed_entries) == 1
    assert db.session.query(NotificationOutbox).filter_by(
        template="payment_failed_buyer", order_id=order.id
    ).count() == 1


def test_replayed_anomaly_is_recorded_once(product, checkout):
    payment, _ = checkout(product.id)
    short = _event(payment, amount_cents=payment.amount_cents - 100)

    results = [reconciliation_service.apply_payment_event(short)["result"] for _ in range(3)]

    assert results == ["anomaly", "anomaly", "anomaly"]
    assert db.session.query(PaymentAnomaly).count() == 1
    assert db.session.query(NotificationOutbox).filter_by(
        template="reconciliation_anomaly_admin"
    ).count() == 1

    # A different report on the same payment is its own anomaly
    reconciliation_service.apply_payment_event(_event(payment, amount_cents=payment.amount_cents - 200))
    assert db.session.query(PaymentAnomaly).count() == 2


def test_amount_mismatch_is_flagged(product, checkout, fresh):
    payment, (order,) = checkout(product.id)

    outcome = reconciliation_service.apply_payment_event(
        _event(payment, amount_cents=payment.amount_cents - 100)
    )

    assert outcome["result"] == "anomaly"
    assert fresh(Order, order.id).status == "pending"
    assert fresh(Payment, payment.id).status == "pending"
    assert fresh(Payment, payment.id).needs_review is True
    anomaly = db.session.query(PaymentAnomaly).one()
    assert anomaly.kind == "amount_mismatch"
    assert anomaly.reported_amount_cents == payment.amount_cents - 100


def test_late_payment_after_expiry(product, checkout, fresh):
    payment, (order,) = checkout(product.id)
    summary = reconciliation_service.expire_unpaid_orders(utcnow() + timedelta(minutes=10))
    assert summary["expired"] == [order.id]

    outcome = reconciliation_service.apply_payment_event(_event(payment))

    assert outcome["result"] == "anomaly"
    order = fresh(Order, order.id)
    assert order.status == "cancelled"
    assert fresh(Product, product.id).quantity == 10
    anomaly = db.session.query(PaymentAnomaly).one()
    assert anomaly.kind == "late_payment"
    admin_alerts = db.session.query(NotificationOutbox).filter_by(
        template="reconciliation_anomaly_admin"
    ).count()
    assert admin_alerts == 1


def test_paid_event_settles_every_order_of_the_payment(make_product, checkout, fresh):
    a = make_product(quantity=2, price_cents=1000, name="Songket")
    b = make_product(quantity=2, price_cents=3000, name="Tudung")
    payment, orders = checkout(None, items=[
        {"product_id": a.id, "quantity": 1},
        {"product_id": b.id, "quantity": 2},
    ])

    reconciliation_service.apply_payment_event(_event(payment))

    assert [fresh(Order, o.id).status for o in orders] == ["paid", "paid"]
    assert fresh(Product, a.id).quantity == 1
    assert fresh(Product, b.id).quantity == 0
