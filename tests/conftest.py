"""
Shared pytest fixtures for all test modules.

Uses an in-memory SQLite database (StaticPool) so every test
function gets a clean, isolated database with nothing written to disk.
"""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings, get_settings
from app.database import Base, get_db
from app import models
from app.gateways.base import GatewayName, PaymentContext


# ---------------------------------------------------------------------------
# In-memory database engine shared across all fixtures in a test session.
# StaticPool forces all SQLAlchemy connections to reuse the same underlying
# sqlite3 connection, which is required for in-memory SQLite.
# ---------------------------------------------------------------------------
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=TEST_ENGINE)

TEST_SETTINGS = Settings(
    _env_file=None,
    app_url="https://pay.example.com",
    gateway_timeout_seconds=5,
)

STRIPE_CREDENTIALS = {
    "publishable_key": "pk_test_123",
    "secret_key": "sk_test_123",
    "webhook_id": "we_current",
    "webhook_secret": "whsec_test_secret",
}
ANET_CREDENTIALS = {
    "login_id": "login_123",
    "transaction_key": "txnkey_123",
    "client_key": "client_123",
    "signing_key": "ABCDEF0123456789",
    "webhook_id": "wh-current",
}


@pytest.fixture(autouse=True)
def reset_db():
    """Drop and recreate all tables before each test for full isolation."""
    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db(reset_db):
    """Yield a SQLAlchemy session backed by the in-memory test database."""
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return TEST_SETTINGS


@pytest.fixture
def client(db):
    """
    FastAPI TestClient with the DB and settings dependencies overridden.
    The TestClient is NOT used as a context manager so the lifespan hook
    (which creates tables on the on-disk DB) is skipped.
    """
    from app.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: TEST_SETTINGS
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers, not fixtures, so any test file can import and call them directly.
# ---------------------------------------------------------------------------
def make_gateway(
    db,
    user_id: int = 1,
    gateway: str = "stripe",
    credentials: Optional[Dict[str, str]] = None,
    active: bool = True,
    live: bool = False,
) -> models.GatewayConfig:
    if credentials is None:
        credentials = STRIPE_CREDENTIALS if gateway == "stripe" else ANET_CREDENTIALS
    config = models.GatewayConfig(
        user_id=user_id,
        gateway_name=gateway,
        is_active=active,
        is_live_mode=live,
    )
    config.credentials = [models.GatewayCredential(key=k, value=v) for k, v in credentials.items()]
    db.add(config)
    db.commit()
    db.refresh(config)
    return config


def make_attempt(
    db,
    transaction_id: Optional[str] = "T1",
    amount="100.00",
    status: models.PaymentStatus = models.PaymentStatus.PAID,
    kind: models.AttemptKind = models.AttemptKind.CHARGE,
    user_id: int = 1,
    gateway: str = "Stripe",
    charge_id: Optional[str] = None,
    **fields,
) -> models.PaymentAttempt:
    attempt = models.PaymentAttempt(
        user_id=user_id,
        store_id=fields.pop("store_id", "7"),
        temp_order_number=fields.pop("temp_order_number", "4321"),
        member_email=fields.pop("member_email", "member@example.com"),
        member_name=fields.pop("member_name", "Ada Member"),
        gateway=gateway,
        kind=kind.value,
        amount=Decimal(str(amount)),
        status=int(status),
        transaction_id=transaction_id,
        charge_id=charge_id,
        **fields,
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    return attempt


def make_context(
    gateway: GatewayName = GatewayName.STRIPE,
    user_id: int = 1,
    credentials: Optional[Dict[str, str]] = None,
    settings: Settings = TEST_SETTINGS,
    is_live: bool = False,
) -> PaymentContext:
    if credentials is None:
        credentials = STRIPE_CREDENTIALS if gateway == GatewayName.STRIPE else ANET_CREDENTIALS
    return PaymentContext(
        user_id=user_id,
        gateway=gateway,
        credentials=MappingProxyType(dict(credentials)),
        settings=settings,
        is_live=is_live,
    )


def stripe_signature(payload: bytes, secret: str = STRIPE_CREDENTIALS["webhook_secret"]) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")
