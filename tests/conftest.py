from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token, get_password_hash
from catalog import slugify
from database import create_document, ensure_indexes, get_db
from errors import UpstreamError
from mailer import Mailer, get_mailer
from main import app, get_clock, get_payment_service
from notifications import get_notifier
from payments import PaymentService

WEBHOOK_SECRET = "whsec_test_secret"


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def emit(self, event, data):
        self.events.append((event, data))

    def names(self):
        return [name for name, _ in self.events]


class RaisingNotifier:
    def emit(self, event, data):
        raise RuntimeError("socket layer down")


class FakeMailer(Mailer):
    def __init__(self, fail=False):
        super().__init__(api_key="re_test", sender="Store <store@example.com>")
        self.fail = fail
        self.sent = []

    def send_order_status_email(self, to, order_id, status):
        if self.fail:
            raise UpstreamError("Email delivery failed: provider unavailable")
        self.sent.append((to, order_id, status))
        return True


class FrozenClock:
    def __init__(self, now=None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def payments(db):
    return PaymentService(db, webhook_secret=WEBHOOK_SECRET, api_key="sk_test_123")


@pytest.fixture
def client(db, notifier, mailer, clock, payments):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_payment_service] = lambda: payments
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_header(account_id, role="customer"):
    token = create_access_token({"sub": account_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


def make_user(db, name="Alice", email="alice@example.com", password=None):
    return create_document("user", {
        "name": name,
        "email": email,
        "password_hash": get_password_hash(password) if password else "not-a-real-hash",
        "role": "customer",
        "is_active": True,
    }, db)


def make_admin(db, name="Root", email="admin@example.com", password=None, role="admin"):
    return create_document("admin", {
        "name": name,
        "email": email,
        "password_hash": get_password_hash(password) if password else "not-a-real-hash",
        "role": role,
        "is_active": True,
    }, db)


@pytest.fixture
def customer(db):
    user_id = make_user(db)
    return {"id": user_id, "headers": auth_header(user_id)}


@pytest.fixture
def other_customer(db):
    user_id = make_user(db, name="Bob", email="bob@example.com")
    return {"id": user_id, "headers": auth_header(user_id)}


@pytest.fixture
def admin(db):
    admin_id = make_admin(db)
    return {"id": admin_id, "headers": auth_header(admin_id, role="admin")}


@pytest.fixture
def super_admin(db):
    admin_id = make_admin(db, name="Owner", email="owner@example.com", role="super-admin")
    return {"id": admin_id, "headers": auth_header(admin_id, role="super-admin")}


def make_category(db, name="Shoes", **extra):
    data = {"name": name, "slug": slugify(name), "description": f"{name} section", "image": "/c.jpg",
            "parent_id": None, "featured": False}
    data.update(extra)
    return create_document("category", data, db)


def make_product(db, category_id, name="Runner", price=50.0, **extra):
    data = {
        "name": name,
        "description": f"{name} description",
        "price": price,
        "discount_price": None,
        "category_id": category_id,
        "brand": "Acme",
        "stock": 10,
        "images": ["/p.jpg"],
        "color_variants": [],
        "simple_colors": [],
        "sizes": [],
        "features": [],
        "featured": False,
        "is_new_product": True,
        "ratings_average": 4.5,
        "ratings_quantity": 0,
    }
    data.update(extra)
    return create_document("product", data, db)


@pytest.fixture
def product(db):
    return make_product(db, make_category(db))


def order_payload(product_id, **overrides):
    payload = {
        "customerInfo": {"name": "Guest Buyer", "email": "guest@example.com", "phone": "555-0100"},
        "items": [{"productId": product_id, "quantity": 2, "price": 10.0, "color": "red", "size": "m"}],
        "shippingAddress": {"street": "1 Main St", "city": "Springfield", "state": "IL", "zipCode": "62701"},
        "paymentMethod": "cash_on_delivery",
        "totalAmount": 20.0,
    }
    payload.update(overrides)
    return payload
