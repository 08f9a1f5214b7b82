import os

# Set test environment before anything reads Config
os.environ["APP_ENV"] = "testing"
os.environ["TESTING"] = "true"
os.environ["SUPABASE_URL"] = "https://test.supabase.co"
os.environ["SUPABASE_KEY"] = "test-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_TIER1"] = "price_tier1_test"
os.environ["STRIPE_PRICE_TIER2"] = "price_tier2_test"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["UNSUBSCRIBE_SECRET"] = "test-unsubscribe-secret"
os.environ["FRONTEND_URL"] = "https://palette.test"
os.environ["SENTRY_ENABLED"] = "false"
os.environ.pop("REDIS_URL", None)
os.environ["REDIS_ENABLED"] = "false"

import pytest

from palette.config import supabase_config
from palette.services.rate_limiting import reset_rate_limiter
from tests.helpers.mocks import MockSupabaseClient


@pytest.fixture
def fake_db(monkeypatch):
    """In-memory Supabase double installed as the cached client."""
    client = MockSupabaseClient()
    monkeypatch.setattr(supabase_config, "_supabase_client", client)
    return client


@pytest.fixture(autouse=True)
def _fresh_rate_limiter():
    reset_rate_limiter()
    yield
    reset_rate_limiter()
