"""
Shared pytest fixtures.

Tests run against an in-memory SQLite database shared through a StaticPool,
with the identity provider, event broker, payment gateway and Redis replaced
by in-process fakes.
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from typing import Dict, Optional
from unittest.mock import MagicMock

import pytest
from fastapi import Header
from fastapi.testclient import TestClient
from redis import Redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from threadly import crud
from threadly.auth import Identity, get_identity
from threadly.cache import ProfileCache
from threadly.database import get_db
from threadly.errors import AuthorizationError, DependencyError
from threadly.main import app
from threadly.messaging import RecordingPublisher
from threadly.models import Base, ProductCondition
from threadly.payments import CheckoutIntent, StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"


# ============================================================================
# FAKES
# ============================================================================


class FakeGateway(StripeGateway):
    """Stripe stand-in: intents are recorded, webhook signatures are verified for real."""

    def __init__(self):
        super().__init__("sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.intents = []
        self.fail_next = False
        self.accounts = {}

    def create_checkout_intent(self, amount, metadata, destination_account=None):
        if self.fail_next:
            self.fail_next = False
            raise DependencyError("Payment provider is unavailable, please try again")
        n = len(self.intents) + 1
        self.intents.append({"amount": amount, "metadata": dict(metadata), "destination": destination_account})
        return CheckoutIntent(intent_id=f"pi_test_{n}", client_secret=f"pi_test_{n}_secret_abc")

    def create_connect_account(self, email, country):
        account_id = f"acct_test_{len(self.accounts) + 1}"
        self.accounts[account_id] = {"email": email, "country": country}
        return account_id

    def create_onboarding_link(self, account_id, refresh_url, return_url):
        return f"https://connect.stripe.test/setup/{account_id}"

    def account_status(self, account_id):
        return {
            "account_id": account_id,
            "charges_enabled": True,
            "payouts_enabled": False,
            "details_submitted": True,
        }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def intent_event(event_type: str, event_id: str, order_id: int, amount: int, intent_id: str = "pi_test_1") -> bytes:
    body = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount,
                "amount_received": amount if event_type == "payment_intent.succeeded" else 0,
                "metadata": {"order_id": str(order_id), "buyer_id": "2", "product_id": "1"},
                "last_payment_error": (
                    {"message": "Your card was declined."}
                    if event_type == "payment_intent.payment_failed"
                    else None
                ),
            }
        },
    }
    return json.dumps(body).encode("utf-8")


def _test_identity(x_test_user: Optional[str] = Header(None)) -> Identity:
    if not x_test_user:
        raise AuthorizationError.unauthenticated()
    return Identity(subject=x_test_user, email=f"{x_test_user}@example.com", first_name=x_test_user.title())


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# COLLABORATOR FIXTURES
# ============================================================================


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def mock_redis() -> MagicMock:
    """Redis client double that behaves like an empty cache."""
    mock = MagicMock(spec=Redis)
    mock.get.return_value = None
    mock.setex.return_value = True
    mock.delete.return_value = 1
    return mock


@pytest.fixture
def profile_cache(mock_redis) -> ProfileCache:
    return ProfileCache(mock_redis, ttl_seconds=60)


@pytest.fixture
def client(session_factory, publisher, gateway, profile_cache):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity] = _test_identity
    app.state.publisher = publisher
    app.state.gateway = gateway
    app.state.profile_cache = profile_cache

    # no context manager: startup would bind the production database
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client

    app.dependency_overrides.clear()


# ============================================================================
# DATA FIXTURES
# ============================================================================


@pytest.fixture
def users(db) -> SimpleNamespace:
    """admin is created first and therefore gets the ADMIN role."""
    admin = crud.upsert_user_from_identity(db, "user_admin", {"email": "admin@example.com"})
    seller = crud.upsert_user_from_identity(db, "user_seller", {"email": "seller@example.com"})
    buyer = crud.upsert_user_from_identity(db, "user_buyer", {"email": "buyer@example.com"})
    other = crud.upsert_user_from_identity(db, "user_other", {"email": "other@example.com"})
    return SimpleNamespace(admin=admin, seller=seller, buyer=buyer, other=other)


def auth(user) -> Dict[str, str]:
    return {"X-Test-User": user.clerk_id}


def make_product(db, seller, price: int = 4500, title: str = "Vintage denim jacket", **overrides):
    data = {
        "title": title,
        "description": "Classic 90s denim jacket in great shape",
        "price": price,
        "category": "Jackets",
        "condition": ProductCondition.VERY_GOOD,
        "brand": "Levis",
        "size": "M",
        "color": "Blue",
    }
    data.update(overrides)
    return crud.create_product(db, seller_id=seller.id, product_data=data)


@pytest.fixture
def product(db, users):
    return make_product(db, users.seller)
