import json

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document
from main import create_app, create_token, hash_password
from payments import PaymentGateway, sign
from schemas import Category, Product, User

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_secret"


class GatewayStub:
    """Fake Razorpay REST endpoints behind httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.fail_with = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.requests.append((request.url.path, body))
        if self.fail_with is not None:
            status, description = self.fail_with
            return httpx.Response(status, json={"error": {"code": "BAD_REQUEST_ERROR", "description": description}})
        if request.url.path.endswith("/orders"):
            return httpx.Response(200, json={
                "id": f"order_{len(self.requests)}",
                "entity": "order",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
            })
        payment_id = request.url.path.split("/")[-2]
        return httpx.Response(200, json={
            "id": "rfnd_1",
            "entity": "refund",
            "payment_id": payment_id,
            "amount": body.get("amount", 70800),
        })


def signature_for(order_id, payment_id):
    return sign(KEY_SECRET, order_id, payment_id)


@pytest.fixture
def db():
    return mongomock.MongoClient().marketplace


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    http = httpx.Client(base_url="https://api.razorpay.test/v1", transport=httpx.MockTransport(gateway_stub))
    return PaymentGateway(KEY_ID, KEY_SECRET, http=http)


@pytest.fixture
def app(db, gateway):
    return create_app(db=db, gateway=gateway)


@pytest.fixture
def client(app):
    return TestClient(app)


def _make_user(db, name, role):
    user = User(name=name, email=f"{name.lower()}@example.com", password_hash=hash_password("secret123"), role=role)
    user_id = create_document(db, "user", user)
    return {"id": user_id, "name": name, "role": role}


@pytest.fixture
def buyer(db):
    return _make_user(db, "Buyer", "user")


@pytest.fixture
def seller_a(db):
    return _make_user(db, "SellerA", "seller")


@pytest.fixture
def seller_b(db):
    return _make_user(db, "SellerB", "seller")


@pytest.fixture
def admin(db):
    return _make_user(db, "Admin", "admin")


def auth(user):
    return {"Authorization": f"Bearer {create_token({'id': user['id'], 'role': user['role']})}"}


@pytest.fixture
def category(db):
    return create_document(db, "category", Category(name="Electronics"))


@pytest.fixture
def make_product(db, category):
    def _make(seller, price=100.0, stock=10, discount_price=None, name="Widget"):
        product = Product(
            name=name,
            description="A product",
            price=price,
            discount_price=discount_price,
            category=category,
            seller=seller["id"],
            stock=stock,
            images=["https://img.example.com/1.jpg"],
        )
        return create_document(db, "product", product)
    return _make


@pytest.fixture
def address():
    return {
        "street": "1 Main Street",
        "city": "Pune",
        "state": "MH",
        "zip_code": "411001",
        "country": "India",
        "phone": "9999999999",
    }
