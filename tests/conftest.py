import os
import uuid

os.environ["APP_ENV"] = "test"
os.environ["MONGO_TRANSACTIONS"] = "false"
os.environ.setdefault("SUPABASE_URL", "http://supabase.test")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "service-key")
os.environ.setdefault("DATABASE_URL", "mongodb://localhost:27017")

from decimal import Decimal

import mongomock
import pytest
from fastapi.testclient import TestClient

import addresses
import catalog
from auth import get_identity_provider
from cache import product_cache
from database import ensure_indexes, get_db, utcnow
from main import app, get_notifier, get_payment_gateway, get_storage
from payments import MockPaymentGateway, PaymentResult
from schemas import AddressCreate, CategoryCreate, ProductCreate

USERS = {
    "admin-token": {"id": "admin-1", "email": "admin@example.com", "role": "admin", "first_name": "Ada"},
    "alice-token": {"id": "alice", "email": "alice@example.com", "role": "customer", "first_name": "Alice"},
    "bob-token": {"id": "bob", "email": "bob@example.com", "role": "customer", "first_name": "Bob"},
}


class FakeIdentityProvider:
    def get_user(self, token):
        user = USERS.get(token)
        if not user:
            return None
        return {"id": user["id"], "email": user["email"]}


class RecordingGateway(MockPaymentGateway):
    def __init__(self, decline=False):
        super().__init__()
        self.decline = decline
        self.charges = []
        self.refunds = []

    def process_payment(self, amount, card, idempotency_key=None):
        if self.decline:
            return PaymentResult(success=False, amount=amount, error="Card declined")
        result = super().process_payment(amount, card, idempotency_key)
        self.charges.append((result.transaction_id, amount))
        return result

    def refund_payment(self, transaction_id, amount):
        self.refunds.append((transaction_id, amount))
        return super().refund_payment(transaction_id, amount)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def _record(self, kind, user, payload):
        if self.fail:
            raise RuntimeError("mail server unavailable")
        self.sent.append((kind, user["email"], payload))
        return {"success": True, "message_id": f"TEST-{len(self.sent)}"}

    def send_order_confirmation(self, user, order):
        return self._record("confirmation", user, order)

    def send_status_update(self, user, order):
        return self._record("status", user, order)

    def send_welcome(self, user):
        return self._record("welcome", user, None)


class FakeStorage:
    def __init__(self):
        self.uploads = []

    def upload(self, file_name, data, content_type):
        self.uploads.append((file_name, len(data), content_type))
        return f"http://supabase.test/storage/v1/object/public/product-images/{file_name}"


@pytest.fixture(autouse=True)
def clear_product_cache():
    product_cache.clear()
    yield
    product_cache.clear()


@pytest.fixture
def db():
    database = mongomock.MongoClient()[f"storefront_test_{uuid.uuid4().hex[:8]}"]
    ensure_indexes(database)
    now = utcnow()
    for user in USERS.values():
        database["user_profile"].insert_one({
            "_id": user["id"],
            "email": user["email"],
            "first_name": user["first_name"],
            "last_name": "Tester",
            "role": user["role"],
            "created_at": now,
            "updated_at": now,
        })
    return database


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def client(db, gateway, notifier, storage):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_identity_provider] = FakeIdentityProvider
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def category(db):
    return catalog.create_category(db, CategoryCreate(name="Electronics"))


@pytest.fixture
def make_product(db, category):
    def _make(name="Wireless Mouse", price="19.99", stock=10, **extra):
        data = ProductCreate(name=name, price=Decimal(price), category_id=category["id"],
                             stock_quantity=stock, **extra)
        return catalog.create_product(db, data)
    return _make


@pytest.fixture
def make_address(db):
    def _make(user_id="alice", city="Springfield", is_default=False):
        data = AddressCreate(address_line1="1 Main St", city=city, postal_code="12345",
                             country="US", is_default=is_default)
        return addresses.create_address(db, user_id, data)
    return _make
