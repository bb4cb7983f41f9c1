"""Pytest fixtures for the shop backend tests."""

import hashlib
import hmac

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import cart
import config
import database
import orders
import payments
from auth import Principal
from catalog import create_product

ADDRESS = {"street": "12 MG Road", "city": "Pune", "state": "MH", "pincode": "411001"}


@pytest.fixture
def db(monkeypatch):
    """Fresh in-memory database swapped in for the configured one."""
    mock_db = mongomock.MongoClient()[f"shop_test_{ObjectId()}"]
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(config, "RAZORPAY_KEY_SECRET", "test_key_secret")
    monkeypatch.setattr(config, "RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
    monkeypatch.setattr(config, "STRICT_ORDER_TRANSITIONS", False)
    return mock_db


def _user(db, role: str, name: str) -> Principal:
    user_id = db["user"].insert_one({
        "name": name,
        "email": f"{name.lower().replace(' ', '.')}@example.com",
        "phone": "9999999999",
        "role": role,
        "rating": {"average": 0, "count": 0},
        "is_active": True,
    }).inserted_id
    return Principal(id=str(user_id), role=role)


@pytest.fixture
def customer(db):
    return _user(db, "customer", "Asha Rao")


@pytest.fixture
def other_customer(db):
    return _user(db, "customer", "Vikram Shah")


@pytest.fixture
def admin(db):
    return _user(db, "admin", "Shop Admin")


@pytest.fixture
def manager(db):
    return _user(db, "inventory_manager", "Stock Keeper")


@pytest.fixture
def partner(db):
    return _user(db, "delivery_partner", "Ravi Kumar")


@pytest.fixture
def other_partner(db):
    return _user(db, "delivery_partner", "Meena Das")


@pytest.fixture
def make_product(db):
    """Factory creating a product (and its inventory record); returns the id."""

    def make(name="Trail Blazer", price=100.0, stock=5, **fields):
        data = {
            "name": name,
            "description": f"{name} bicycle",
            "category": "mountain",
            "price": price,
            "stock": stock,
            **fields,
        }
        return str(create_product(data)["_id"])

    return make


@pytest.fixture
def shipping_address():
    return dict(ADDRESS)


@pytest.fixture
def place_order(db):
    """Factory filling a cart and checking it out."""

    def place(user_id, *lines):
        for product_id, quantity in lines:
            cart.add_item(user_id, product_id, quantity)
        return orders.checkout(user_id, dict(ADDRESS))

    return place


@pytest.fixture
def sign_payment():
    def sign(gateway_order_id, gateway_payment_id):
        message = f"{gateway_order_id}|{gateway_payment_id}".encode()
        return hmac.new(config.RAZORPAY_KEY_SECRET.encode(), message, hashlib.sha256).hexdigest()

    return sign


@pytest.fixture
def sign_webhook():
    def sign(body: bytes):
        return hmac.new(config.RAZORPAY_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()

    return sign


class FakeGateway:
    """Records calls instead of talking to the payment provider."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.intents = []
        self.refunds = []

    def create_payment_intent(self, amount, currency, reference, notes=None):
        intent_id = f"order_test{len(self.intents) + 1}"
        self.intents.append({"id": intent_id, "amount": amount, "reference": reference})
        return {"intent_id": intent_id, "amount": payments.to_subunits(amount), "currency": currency}

    def fetch_payment(self, payment_id):
        return {"id": payment_id, "method": "upi", "status": "captured"}

    def refund(self, payment_id, amount, reason=None):
        self.refunds.append({"payment_id": payment_id, "amount": amount, "reason": reason})
        return {"refund_id": f"rfnd_test{len(self.refunds)}", "amount": amount, "status": "processed"}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    from main import app

    app.dependency_overrides[payments.get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def as_user():
    """Headers the auth gateway forwards for ``principal``."""

    def make(principal: Principal):
        return {"X-User-Id": principal.id, "X-User-Role": principal.role}

    return make
