"""Pytest fixtures for the storefront API tests."""

from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token
from config import config
from database import ensure_indexes, get_db
from errors import PaymentGatewayError
from main import app
from payment import expected_signature, get_gateway
from schemas import Coupon, Product

GATEWAY_SECRET = "test_gateway_secret"

ADDRESS = {
    "full_name": "Asha Verma",
    "phone": "9876543210",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}

BANK_DETAILS = {
    "account_holder_name": "Asha Verma",
    "account_number": "123456789012",
    "ifsc_code": "hdfc0001234",
    "bank_name": "HDFC Bank",
}


class FakeGateway:
    """Stands in for the remote payment API; records every order it is asked for."""

    def __init__(self):
        self.created = []
        self.fail = False

    def create_remote_order(self, amount_minor, currency, receipt):
        if self.fail:
            raise PaymentGatewayError("Error creating payment order")
        gateway_order_id = f"order_test{len(self.created) + 1}"
        self.created.append({"id": gateway_order_id, "amount": amount_minor, "currency": currency,
                             "receipt": receipt})
        return {"gateway_order_id": gateway_order_id, "amount": amount_minor, "currency": currency}


def sign(gateway_order_id, payment_id):
    return expected_signature(gateway_order_id, payment_id, GATEWAY_SECRET)


def _insert_user(db, name, email, is_admin=False):
    doc = {
        "name": name,
        "email": email,
        "hashed_password": "unused",
        "is_active": True,
        "is_admin": is_admin,
        "created_at": datetime.utcnow(),
    }
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def db():
    """Fresh in-memory database with the production indexes."""
    database = mongomock.MongoClient()["shopeasy_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway, monkeypatch):
    monkeypatch.setattr(config, "RAZORPAY_KEY_ID", "rzp_test_key")
    monkeypatch.setattr(config, "RAZORPAY_KEY_SECRET", GATEWAY_SECRET)
    monkeypatch.setattr(config, "SMTP_USER", None)
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user(db):
    return _insert_user(db, "Asha Verma", "asha@shopeasy.in")


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture
def other_user(db):
    return _insert_user(db, "Ravi Kumar", "ravi@shopeasy.in")


@pytest.fixture
def other_headers(other_user):
    return {"Authorization": f"Bearer {create_token(other_user)}"}


@pytest.fixture
def admin(db):
    return _insert_user(db, "Store Admin", "admin@shopeasy.in", is_admin=True)


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {create_token(admin)}"}


@pytest.fixture
def make_product(db):
    def _make(name="Cotton Kurta", price=100.0, stock=10, **extra):
        doc = Product(name=name, price=price, stock=stock, images=[f"/img/{name}.jpg"], **extra).model_dump()
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc
    return _make


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE20", discount_type="percentage", discount_value=20, min_order_amount=0,
              max_discount_amount=None, usage_limit=None, valid_days=30, **extra):
        now = datetime.utcnow()
        doc = Coupon(
            code=code,
            description=f"{code} offer",
            discount_type=discount_type,
            discount_value=discount_value,
            min_order_amount=min_order_amount,
            max_discount_amount=max_discount_amount,
            valid_from=now - timedelta(days=1),
            valid_until=now + timedelta(days=valid_days),
            usage_limit=usage_limit,
            **extra,
        ).model_dump()
        doc["_id"] = db["coupon"].insert_one(doc).inserted_id
        return doc
    return _make


@pytest.fixture
def add_to_cart(client, auth_headers):
    def _add(product, quantity=1, headers=None, **extra):
        resp = client.post(
            "/cart/add",
            json={"product_id": str(product["_id"]), "quantity": quantity, **extra},
            headers=headers or auth_headers,
        )
        assert resp.status_code == 200, resp.text
        return resp.json()
    return _add


@pytest.fixture
def place_cod_order(client, auth_headers, add_to_cart):
    """Put ``product`` in the cart and check out with cash on delivery."""
    def _place(product, quantity=1):
        add_to_cart(product, quantity)
        resp = client.post("/orders", json={"shipping_address": ADDRESS, "payment_method": "COD"},
                           headers=auth_headers)
        assert resp.status_code == 201, resp.text
        return resp.json()
    return _place


@pytest.fixture
def place_paid_order(client, auth_headers, add_to_cart):
    """Put ``product`` in the cart and pay for it online."""
    def _place(product, quantity=1):
        add_to_cart(product, quantity)
        created = client.post("/payment/create-order", json={"shipping_address": ADDRESS},
                              headers=auth_headers)
        assert created.status_code == 200, created.text
        gateway_order_id = created.json()["order"]["id"]
        resp = client.post(
            "/payment/verify-payment",
            json={
                "razorpay_order_id": gateway_order_id,
                "razorpay_payment_id": "pay_test1",
                "razorpay_signature": sign(gateway_order_id, "pay_test1"),
            },
            headers=auth_headers,
        )
        assert resp.status_code == 200, resp.text
        return resp.json()["order"]
    return _place


@pytest.fixture
def advance_order(client, admin_headers):
    """Walk an order forward one admin step at a time."""
    def _advance(order_id, *statuses):
        resp = None
        for status in statuses:
            resp = client.put(f"/orders/{order_id}/status", json={"order_status": status}, headers=admin_headers)
            assert resp.status_code == 200, resp.text
        return resp.json() if resp is not None else None
    return _advance
