# gamerhub/conftest.py
import os

# Must be set before gamerhub.core.config builds its Settings
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "test")

import pytest
from unittest.mock import Mock, patch

from gamerhub.core.config import settings
from gamerhub.core.database import reset_database
from gamerhub.features.entitlements.service import reset_entitlement_service


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Fresh schema for every test.

    The in-memory SQLite database lives on one shared connection, so dropping
    and recreating the tables is enough to isolate tests.
    """
    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def fresh_entitlement_service():
    """Rebuild the module-level service so settings patches take effect."""
    reset_entitlement_service()
    yield
    reset_entitlement_service()


@pytest.fixture(scope="function", autouse=True)
def upload_dir(tmp_path, monkeypatch):
    """Keep uploaded bytes inside the test's tmp dir."""
    target = tmp_path / "uploads"
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(target))
    monkeypatch.setattr(settings, "MEDIA_BASE_URL", "https://media.test")
    return target


@pytest.fixture
def billing_settings(monkeypatch):
    """Enable billing with fake Stripe credentials."""
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setattr(settings, "STRIPE_PREMIUM_PRICE_ID", "price_premium")
    monkeypatch.setattr(settings, "STRIPE_PRO_PRICE_ID", "price_pro")
    return settings


@pytest.fixture
def mock_stripe_provider(billing_settings):
    """Mock Stripe provider for testing (no real API calls)."""
    with patch("gamerhub.features.billing.service.StripeProvider") as mock:
        instance = Mock()
        mock.return_value = instance
        yield instance


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from gamerhub.main import app

    return TestClient(app)
