"""Pytest fixtures for the shop API tests."""

import hashlib
import hmac
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import notifications
import security


@pytest.fixture(autouse=True)
def db(monkeypatch):
    """Swap the MongoDB handle for an in-memory mongomock database."""
    mock_db = mongomock.MongoClient()["shop_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    return mock_db


@pytest.fixture(autouse=True)
def mailbox(monkeypatch):
    """Capture outgoing email instead of talking to an SMTP server."""
    sent = []

    def fake_send(to, subject, body):
        sent.append({"to": to, "subject": subject, "body": body})

    monkeypatch.setattr(notifications, "send_email", fake_send)
    return sent


@pytest.fixture
def client():
    from main import app

    return TestClient(app)


@pytest.fixture
def make_user(db):
    def _make(name="Jane Doe", email="jane@example.com", role="customer", balance=0.0, password="secret123"):
        user_id = db["user"].insert_one({
            "name": name,
            "email": email,
            "password_hash": security.hash_password(password),
            "role": role,
            "account_balance": balance,
            "created_at": database.utcnow(),
            "updated_at": database.utcnow(),
        }).inserted_id
        return db["user"].find_one({"_id": user_id})

    return _make


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def seller(make_user):
    return make_user(name="Sam Seller", email="sam@example.com", role="seller")


@pytest.fixture
def admin(make_user):
    return make_user(name="Ada Admin", email="ada@example.com", role="admin")


def auth_headers(user):
    token = security.create_access_token({"sub": str(user["_id"])})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_product(db):
    def _make(name="Coffee Mug", price=10.0, stock=10, seller=None, **extra):
        doc = {
            "name": name,
            "description": f"A fine {name.lower()}",
            "price": price,
            "category": "Kitchen",
            "images": [f"https://img.example.com/{name.lower().replace(' ', '-')}.jpg"],
            "stock": stock,
            "sold": 0,
            "ratings": {"average": 0, "count": 0},
            "seller_id": str(seller["_id"]) if seller else None,
            "is_active": True,
            "created_at": database.utcnow(),
            "updated_at": database.utcnow(),
        }
        doc.update(extra)
        product_id = db["product"].insert_one(doc).inserted_id
        return db["product"].find_one({"_id": product_id})

    return _make


@pytest.fixture
def address():
    return {
        "fullName": "Jane Doe",
        "address": "12 Bole Road",
        "city": "Addis Ababa",
        "state": "AA",
        "zipCode": "1000",
        "country": "Ethiopia",
    }


@pytest.fixture
def place_order(client, address):
    """Place an order over HTTP and return the created order JSON."""

    def _place(user, product, quantity=2, payment_method="cash on delivery", tax=0.0, shipping=0.0):
        response = client.post(
            "/api/orders",
            json={
                "orderItems": [{"productId": str(product["_id"]), "quantity": quantity}],
                "shippingAddress": address,
                "paymentMethod": payment_method,
                "itemsPrice": product["price"] * quantity,
                "taxPrice": tax,
                "shippingPrice": shipping,
            },
            headers=auth_headers(user),
        )
        assert response.status_code == 201, response.json()
        return response.json()["data"]["order"]

    return _place


def stripe_signature(payload: bytes, secret: str) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
