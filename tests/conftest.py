"""
Shared test fixtures for the Toolspace billing test suite.
"""

import pytest
import structlog
from fastapi.testclient import TestClient

from tests.helpers import WEBHOOK_SECRET, MutableClock
from toolspace_billing.config import BillingConfig
from toolspace_billing.models.billing import PricingConfig
from toolspace_billing.services.billing_store import InMemoryBillingRepository, ProfileStore
from toolspace_billing.services.entitlements import EntitlementsResolver, load_pricing_config


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for tests so Settings never reach real services."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "sk_test_fake")
    monkeypatch.setenv("STRIPE__WEBHOOK_SECRET", WEBHOOK_SECRET)


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from toolspace_billing.config import get_settings

    get_settings.cache_clear()

    from toolspace_billing.main import app

    return TestClient(app)


@pytest.fixture(scope="session")
def pricing() -> PricingConfig:
    """The bundled pricing table."""
    return load_pricing_config()


@pytest.fixture
def resolver(pricing: PricingConfig) -> EntitlementsResolver:
    return EntitlementsResolver(pricing)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def store(repository: InMemoryBillingRepository) -> ProfileStore:
    return ProfileStore(repository)


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig()
