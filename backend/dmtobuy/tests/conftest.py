"""Pytest configuration for DM-to-Buy tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: One in-memory database per test, fake Instagram sender and classifier,
     and a TestClient whose background tasks write to the same database
REFERENCES:
    - dmtobuy/main.py: FastAPI application
    - dmtobuy/database.py: get_db / get_session_factory
    - dmtobuy/services/instagram_client.py: DmSender protocol
"""

import base64
import hashlib
import hmac
import json
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (read at import time by database.py / security.py)
# Must be URL-safe base64-encoded 32-byte string
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("APP_URL", "https://dm.example.com")
os.environ.setdefault("SHOPIFY_API_SECRET", "test-shopify-secret")
os.environ.setdefault("META_APP_SECRET", "test-meta-secret")
os.environ.setdefault("META_WEBHOOK_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ADMIN_SECRET_KEY", "test-admin-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")


# ============================================================================
# Fakes
# ============================================================================

class FakeSender:
    """Records DMs instead of calling Instagram. Set `fail` to raise ProviderError."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[dict] = []
        self.calls = 0

    def send_dm(self, db, shop_id, recipient_id, text):
        from dmtobuy.services.instagram_client import ProviderError

        self.calls += 1
        if self.fail:
            raise ProviderError("Instagram API error: temporarily unavailable", status_code=503)
        self.sent.append({"shop_id": shop_id, "recipient_id": recipient_id, "text": text})
        return f"mid.{self.calls}"


class FixedClassifier:
    """Returns the same classification for every text."""

    def __init__(self, intent: Optional[str] = "purchase", confidence: Optional[float] = 0.9, sentiment: str = "positive"):
        self.intent = intent
        self.confidence = confidence
        self.sentiment = sentiment
        self.calls = 0

    def classify(self, text, channel):
        from dmtobuy.services.automation_service import Classification

        self.calls += 1
        return Classification(intent=self.intent, confidence=self.confidence, sentiment=self.sentiment)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every session (StaticPool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from dmtobuy.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Collaborator Fixtures
# ============================================================================

@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def classifier() -> FixedClassifier:
    return FixedClassifier()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(session_factory, fake_sender, classifier):
    """FastAPI app wired to the test database and fakes."""
    from dmtobuy.database import get_db, get_session_factory
    from dmtobuy.main import create_app
    from dmtobuy.routers.meta_webhooks import get_classifier
    from dmtobuy.services.instagram_client import get_dm_sender

    test_app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_session_factory] = lambda: session_factory
    test_app.dependency_overrides[get_dm_sender] = lambda: fake_sender
    test_app.dependency_overrides[get_classifier] = lambda: classifier

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def settings():
    from dmtobuy.deps import get_settings
    return get_settings()


@pytest.fixture
def admin_headers(settings):
    return {"X-Admin-Key": settings.ADMIN_SECRET_KEY}


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def make_shop(test_db_session):
    """Factory: shop on `plan`, optionally connected to an Instagram account."""
    from dmtobuy.models import MetaAuth, Shop, ShopSettings
    from dmtobuy.plans import get_plan_config
    from dmtobuy.security import encrypt_secret
    from dmtobuy.services.shop_service import apply_plan_restrictions, current_usage_month

    counter = {"n": 0}

    def _make(plan: str = "PRO", ig_business_id: Optional[str] = None, settings: Optional[dict] = None, **fields) -> Shop:
        counter["n"] += 1
        config = get_plan_config(plan)
        shop = Shop(
            shopify_domain=fields.pop("shopify_domain", f"store-{counter['n']}.myshopify.com"),
            plan=config.name,
            monthly_cap=fields.pop("monthly_cap", config.cap),
            priority_support=config.priority_support,
            usage_count=fields.pop("usage_count", 0),
            usage_month=current_usage_month(),
            active=fields.pop("active", True),
        )
        test_db_session.add(shop)
        test_db_session.flush()

        if settings is not None:
            test_db_session.add(ShopSettings(shop_id=shop.id, **apply_plan_restrictions(config.name, settings)))
        if ig_business_id:
            test_db_session.add(MetaAuth(
                shop_id=shop.id,
                ig_business_id=ig_business_id,
                access_token_enc=encrypt_secret("test-access-token", context="tests"),
            ))

        test_db_session.commit()
        return shop

    return _make


@pytest.fixture
def pro_shop(make_shop):
    return make_shop("PRO", ig_business_id="17841400000000001", settings={"followup_enabled": True})


# ============================================================================
# Signing Helpers
# ============================================================================

def shopify_signature(body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")


def meta_signature(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def json_body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


def utcnow() -> datetime:
    return datetime.utcnow().replace(microsecond=0)
