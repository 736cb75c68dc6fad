import itertools
import os

os.environ["APP_ENV"] = "test"
os.environ["EMAIL_USER"] = ""
os.environ["EMAIL_PASS"] = ""

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import mailer
from database import create_document, get_db
from main import app
from ratelimit import default_store
from schemas import Product as ProductSchema, User as UserSchema
from security import create_access_token, hash_password

PASSWORD = "Secret123"
# bcrypt is slow on purpose; hash the shared test password once
PASSWORD_HASH = hash_password(PASSWORD)

_sku = itertools.count(1)


@pytest.fixture
def mongo():
    mongo_client = mongomock.MongoClient()
    yield mongo_client["marketly_test"]
    mongo_client.drop_database("marketly_test")


@pytest.fixture
def client(mongo, monkeypatch):
    monkeypatch.setattr(database, "db", mongo)
    app.dependency_overrides[get_db] = lambda: mongo
    default_store.reset()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    default_store.reset()


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    sent = []

    def fake_send(to, subject, text, html=None):
        sent.append({"to": to, "subject": subject, "text": text, "html": html})

    monkeypatch.setattr(mailer, "is_configured", lambda: True)
    monkeypatch.setattr(mailer, "send_email", fake_send)
    return sent


@pytest.fixture
def make_user(mongo):
    counter = itertools.count(1)

    def _make(email=None, role="user", name="Test User", **extra):
        n = next(counter)
        doc = UserSchema(
            name=name,
            email=email or f"user{n}@example.com",
            password_hash=PASSWORD_HASH,
            role=role,
        ).model_dump()
        doc.update(extra)
        return create_document(mongo, "user", doc)

    return _make


@pytest.fixture
def user(make_user):
    return make_user(email="shopper@example.com", name="Sam Shopper")


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", name="Ada Admin", role="admin")


def auth_headers(user_doc):
    return {"Authorization": f"Bearer {create_access_token(user_doc)}"}


@pytest.fixture
def user_headers(user):
    return auth_headers(user)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def make_product(mongo):
    def _make(**overrides):
        fields = {
            "name": "Desk Lamp",
            "description": "A lamp for your desk",
            "price": 10.0,
            "category": "Home & Garden",
            "stock": 10,
            "sku": f"HOM-TEST-{next(_sku):04d}",
        }
        fields.update(overrides)
        return create_document(mongo, "product", ProductSchema(**fields))

    return _make


@pytest.fixture
def shipping_address():
    return {
        "first_name": "Sam",
        "last_name": "Shopper",
        "email": "shopper@example.com",
        "phone": "555-0100",
        "street": "1 Main Street",
        "city": "Springfield",
        "state": "IL",
        "zip_code": "62701",
    }
