"""
Pytest fixtures for settlement backend tests.

Provides test database setup, seller/product/checkout factories, signed
gateway callbacks and the test client.
"""

import json

import pytest

from settlement import create_app
from settlement.extensions import db
from settlement.models import Order, Payment, Product, Seller
from settlement.security import seller_token
from settlement.services import checkout_service, notification_service
from settlement.services.gateways import get_adapter


TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test-secret',
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'NOTIFICATION_BACKEND': 'memory',
    'EMAIL_ACTION_SECRET': 'test-email-secret',
    'CRON_SECRET': 'test-cron-secret',
    'SANDBOX_GATEWAY_SECRET': 'test-sandbox-secret',
    'BILLPLZ_X_SIGNATURE_KEY': 'test-billplz-key',
    'CHIP_WEBHOOK_SECRET': 'test-chip-secret',
    'ADMIN_EMAIL': 'ops@test.local',
    'PUBLIC_BASE_URL': 'http://shop.test',
    'PAYMENT_WINDOW_MINUTES': 3,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(dict(TEST_CONFIG))

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function', autouse=True)
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    notification_service.sent_messages().clear()

    yield db.session

    # Cleanup after test
    db.session.rollback()
    db.session.remove()


@pytest.fixture(scope='function')
def seller(db_session):
    """Create the seller most tests sell from."""
    seller = Seller(name="Kedai Aina", email="aina@seller.test", reminder_frequency="30m", is_active=True)
    db_session.add(seller)
    db_session.commit()
    return seller


@pytest.fixture(scope='function')
def other_seller(db_session):
    seller = Seller(name="Kedai Badrul", email="badrul@seller.test", reminder_frequency="1h", is_active=True)
    db_session.add(seller)
    db_session.commit()
    return seller


@pytest.fixture(scope='function')
def make_product(db_session, seller):
    """Factory: product for the default seller (or another)."""
    def _make(quantity=10, price_cents=2500, shipping_cents=0, seller_id=None, name="Batik Scarf"):
        product = Product(
            seller_id=seller_id or seller.id,
            name=name,
            price_cents=price_cents,
            shipping_cents=shipping_cents,
            quantity=quantity,
            reserved_quantity=0,
            is_active=True,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def product(make_product):
    return make_product()


BUYER = {
    "name": "Nur Buyer",
    "email": "nur@buyer.test",
    "phone": "0123456789",
    "shipping_address": "12 Jalan Ampang, Kuala Lumpur",
}


@pytest.fixture(scope='function')
def checkout(db_session):
    """Factory: run a checkout and return (payment, [orders]) as fresh ORM rows."""
    def _checkout(product_id, quantity=1, payment_method="sandbox", buyer=None, items=None):
        result = checkout_service.create_checkout(
            items=items or [{"product_id": product_id, "quantity": quantity}],
            buyer=dict(buyer or BUYER),
            payment_method=payment_method,
        )
        payment = db.session.get(Payment, result["payment"]["id"])
        orders = [db.session.get(Order, o["id"]) for o in result["orders"]]
        return payment, orders
    return _checkout


@pytest.fixture(scope='function')
def seller_headers(seller):
    return {"Authorization": f"Bearer {seller_token(seller.id)}"}


@pytest.fixture(scope='function')
def cron_headers():
    return {"X-Cron-Secret": TEST_CONFIG['CRON_SECRET']}


@pytest.fixture(scope='function')
def post_webhook(client):
    """POST a correctly signed callback for a provider."""
    def _post(provider, body, signature=None):
        raw = json.dumps(body).encode("utf-8")
        adapter = get_adapter(provider)
        headers = {
            "Content-Type": "application/json",
            adapter.signature_header: signature if signature is not None else adapter.sign(raw),
        }
        return client.post(f"/api/payments/webhooks/{provider}", data=raw, headers=headers)
    return _post


@pytest.fixture(scope='function')
def fresh(db_session):
    """Reload a row after a request changed it through its own session."""
    def _fresh(model, pk):
        db_session.expire_all()
        return db_session.get(model, pk)
    return _fresh
