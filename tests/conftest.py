import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from reconciler.main import app as fastapi_app
from reconciler.database import Base
from reconciler.models import (
    LineItem,
    Order,
    OrderStatus,
    ProductVariant,
    Stock,
    Transaction,
    TransactionStatus,
)
import reconciler.auth

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_reconciler.db"
WEBHOOK_SECRET = "whsec_test"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("ABANDONED_ORDER_ENABLED", "false")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr("reconciler.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("reconciler.main.SessionLocal", TestingSessionLocal)

    fastapi_app.dependency_overrides[reconciler.auth.verify_token] = \
        lambda: {"sub": "tester", "role": "ADMIN"}

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def seed_order():
    """Create an order with one line per (sku, stock on hand, quantity ordered)."""

    def _seed(lines, session_id="cs_test_1", tx_status=TransactionStatus.PENDING,
              order_status=OrderStatus.PENDING, created_at=None, with_stock=True):
        db = TestingSessionLocal()
        order = Order(status=order_status, customer_email="buyer@example.com",
                      created_at=created_at or datetime.now(timezone.utc))
        db.add(order)
        for sku, on_hand, ordered in lines:
            variant = db.query(ProductVariant).filter_by(sku=sku).first()
            if variant is None:
                variant = ProductVariant(sku=sku, price=Decimal("10.00"))
                db.add(variant)
                db.flush()
                if with_stock:
                    db.add(Stock(variant_id=variant.id, quantity=on_hand))
            order.items.append(
                LineItem(variant_id=variant.id, quantity=ordered, price=variant.price))
        db.flush()
        if session_id:
            db.add(Transaction(order_id=order.id, stripe_session_id=session_id,
                               amount=order.total_amount, status=tx_status))
        db.commit()
        order_id = order.id
        db.close()
        return order_id

    return _seed


def stock_of(sku):
    db = TestingSessionLocal()
    variant = db.query(ProductVariant).filter_by(sku=sku).one()
    quantity = variant.stock.quantity
    db.close()
    return quantity


def checkout_completed(session_id="cs_test_1", payment_intent="pi_test_1"):
    return {
        "id": "evt_test",
        "type": "checkout.session.completed",
        "data": {"object": {"id": session_id, "payment_intent": payment_intent}},
    }


def sign_webhook(event, secret=WEBHOOK_SECRET):
    """Serialize ``event`` and build a Stripe-Signature header for it."""
    payload = json.dumps(event)
    timestamp = int(time.time())
    digest = hmac.new(secret.encode("utf-8"),
                      f"{timestamp}.{payload}".encode("utf-8"),
                      hashlib.sha256).hexdigest()
    return payload, f"t={timestamp},v1={digest}"


def stripe_checkout_event(event_type, session):
    return {
        "id": "evt_signed_1",
        "object": "event",
        "type": event_type,
        "data": {"object": dict({"object": "checkout.session"}, **session)},
    }
