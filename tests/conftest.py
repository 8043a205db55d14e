import hashlib
import hmac
import json
import time
from typing import Optional

import mongomock
import pytest
from fastapi.testclient import TestClient

from royal_jewels import config
from royal_jewels.auth import AuthContext, create_token, hash_password
from royal_jewels.database import ensure_indexes, get_db, utcnow
from royal_jewels.errors import UpstreamFailure
from royal_jewels.main import app
from royal_jewels.notifications import get_mailer
from royal_jewels.payments import CheckoutSession, get_gateway

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)
WEBHOOK_SECRET = "whsec_test"


class FakeGateway:
    """In-memory checkout provider. Sessions start unpaid; tests call ``pay``."""

    def __init__(self):
        self.sessions = {}
        self.by_key = {}
        self.fail = False

    def create_session(self, items, success_url, cancel_url, metadata, idempotency_key):
        if self.fail:
            raise UpstreamFailure()
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "payment_status": "unpaid",
            # the provider hands metadata back as strings
            "metadata": {k: str(v) for k, v in metadata.items()},
            "items": items,
        }
        session = CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")
        self.by_key[idempotency_key] = session
        return session

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise UpstreamFailure()
        return dict(self.sessions[session_id])

    def pay(self, session_id):
        self.sessions[session_id]["payment_status"] = "paid"

    @property
    def last(self):
        return list(self.sessions.values())[-1]


class FakeMailer:
    def __init__(self):
        self.sent = []

    def send_order_confirmation(self, order, email):
        self.sent.append(("order", email, order))
        return True

    def send_gift_card(self, card, email):
        self.sent.append(("giftcard", email, card))
        return True

    def send_investment_confirmation(self, entry, email):
        self.sent.append(("investment", email, entry))
        return True

    def of_kind(self, kind):
        return [m for m in self.sent if m[0] == kind]


@pytest.fixture
def db():
    database = mongomock.MongoClient()["royal_jewels_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(db, gateway, mailer):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_mailer] = lambda: mailer
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email="asha@example.com", name="Asha", gold=0.0, silver=0.0, **extra) -> dict:
    doc = {
        "name": name,
        "email": email,
        "password_hash": PASSWORD_HASH,
        "address": "12 MG Road, Jaipur",
        "phone": "9876543210",
        "gold_balance": gold,
        "silver_balance": silver,
        "is_active": True,
        "is_banned": False,
        "created_at": utcnow(),
    }
    doc.update(extra)
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


def make_product(db, name="Gold Ring", price=25000.0, category="Rings") -> str:
    result = db["product"].insert_one(
        {"name": name, "description": "", "price": price, "weight": 4.0, "category": category, "image": None}
    )
    return str(result.inserted_id)


def context_for(user: dict) -> AuthContext:
    return AuthContext(user_id=str(user["_id"]), email=user["email"], name=user["name"])


def headers_for(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_token(str(user['_id']), user['email'], user['name'])}"}


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def completed_event(session: dict) -> bytes:
    obj = {k: v for k, v in session.items() if k != "items"}
    return json.dumps({"type": "checkout.session.completed", "data": {"object": obj}}).encode()


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def ctx(user):
    return context_for(user)


@pytest.fixture
def auth_headers(user):
    return headers_for(user)


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_token('admin', '', 'admin', is_admin=True)}"}


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET
