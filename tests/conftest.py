import hashlib
import hmac
import json

import fakeredis
import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

from cache import RedisCache
from config import Settings
from database import Database
from main import build_services, create_app
from notifications import ConnectionHub, Mailer
from payments import PaystackGateway
from schemas import Product, User

SECRET = "sk_test_secret"
ADMIN_KEY = "admin-key"
SHIPPING = {
    "country": "Nigeria",
    "state": "Lagos",
    "city": "Ikeja",
    "street": "Allen Avenue",
    "postal_code": "100001",
    "home_address": "12B",
    "phone": "+2348000000000",
}


class RecordingCache(RedisCache):
    """fakeredis-backed cache that remembers every pattern it was asked to clear."""

    def __init__(self):
        super().__init__(fakeredis.FakeRedis(), default_ttl=600)
        self.cleared = []

    def clear(self, pattern):
        self.cleared.append(pattern)
        return super().clear(pattern)


class PaystackStub:
    """In-memory Paystack: remembers initialized references and answers verify calls."""

    def __init__(self):
        self.initialized = {}
        self.outcomes = {}
        self.error = None
        self.requests = []

    def settle_as(self, reference, status="success", amount=None):
        self.outcomes[reference] = (status, amount)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        path = request.url.path
        if path == "/transaction/initialize":
            body = json.loads(request.content)
            self.initialized[body["reference"]] = body
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.com/{body['reference']}",
                    "access_code": f"AC_{body['reference'][-8:]}",
                    "reference": body["reference"],
                },
            })
        if path.startswith("/transaction/verify/"):
            reference = path.rsplit("/", 1)[1]
            if reference not in self.initialized:
                return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})
            status, amount = self.outcomes.get(reference, ("success", None))
            if amount is None:
                amount = self.initialized[reference]["amount"]
            return httpx.Response(200, json={
                "status": True,
                "message": "Verification successful",
                "data": {"status": status, "amount": amount, "reference": reference,
                         "gateway_response": "Successful" if status == "success" else "Declined",
                         "paid_at": "2026-10-18T10:00:00.000Z"},
            })
        return httpx.Response(404, json={"status": False, "message": "Not found"})


def sign(body: bytes) -> str:
    return hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()


def charge_success(reference: str, amount_minor: int) -> bytes:
    return json.dumps({
        "event": "charge.success",
        "data": {"status": "success", "reference": reference, "amount": amount_minor,
                 "gateway_response": "Successful"},
    }).encode()


@pytest.fixture
def settings():
    settings = Settings()
    settings.ADMIN_API_KEY = ADMIN_KEY
    settings.PAYSTACK_SECRET_KEY = SECRET
    settings.REDIS_URL = ""
    settings.SMTP_HOST = ""
    return settings


@pytest.fixture
def database():
    database = Database(mongomock.MongoClient(), "stylist_market_test", transactions=False)
    database.ensure_indexes()
    return database


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def paystack():
    return PaystackStub()


@pytest.fixture
def gateway(paystack):
    client = httpx.Client(base_url="https://api.paystack.co", transport=httpx.MockTransport(paystack))
    return PaystackGateway(SECRET, client=client)


@pytest.fixture
def services(settings, database, cache, gateway):
    return build_services(settings, database, cache, gateway, ConnectionHub(), Mailer())


@pytest.fixture
def client(settings, database, cache, gateway):
    app = create_app(settings, database, cache, gateway, ConnectionHub(), Mailer())
    return TestClient(app)


def make_user(database, name, email, role="user", wallet_balance=0.0):
    return database.insert_document("user", User(name=name, email=email, role=role, wallet_balance=wallet_balance))


@pytest.fixture
def customer(database):
    return make_user(database, "Ada Obi", "ada@example.com", wallet_balance=500.0)


@pytest.fixture
def stylist(database):
    return make_user(database, "Tunde Bello", "tunde@example.com", role="stylist")


@pytest.fixture
def other_stylist(database):
    return make_user(database, "Kemi Ade", "kemi@example.com", role="stylist")


@pytest.fixture
def product(database, stylist):
    return database.insert_document("product", Product(
        name="Ankara Wrap Dress", price=50.0, stock=5, stylist_id=str(stylist["_id"]),
    ))


@pytest.fixture
def other_product(database, other_stylist):
    return database.insert_document("product", Product(
        name="Aso Oke Cap", price=20.0, stock=10, stylist_id=str(other_stylist["_id"]),
    ))


def stock_of(database, product):
    return database.products.find_one({"_id": product["_id"]})["stock"]


def balance_of(database, user):
    return database.users.find_one({"_id": user["_id"]})["wallet_balance"]


def shrink_stock_after_snapshot(monkeypatch, services, database, product, stock):
    """Let another buyer take stock between the cart check and the checkout unit."""
    real_snapshot = services.carts.snapshot

    def snapshot(user_id, check_stock=True, uow=None):
        result = real_snapshot(user_id, check_stock=check_stock, uow=uow)
        database.products.update_one({"_id": product["_id"]}, {"$set": {"stock": stock}})
        return result

    monkeypatch.setattr(services.carts, "snapshot", snapshot)
