"""
Global pytest configuration and fixtures for RankPilot Platform Services tests.

Every test runs against a fresh in-memory SQLite database and an explicit
billing configuration; nothing reads the process environment's billing settings.
"""

import os
from uuid import uuid4

# Settings are read at import time; pin the test environment first
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")
os.environ.pop("DATABASE__URL", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import rankpilot.platform.billing.models  # noqa: E402,F401
from rankpilot.platform.billing.config import (  # noqa: E402
    BillingConfig,
    DunningConfig,
    StripeConfig,
    set_billing_config,
)
from rankpilot.platform.billing.metrics import BillingMetrics, set_billing_metrics  # noqa: E402
from rankpilot.platform.billing.tiers import SubscriptionTier  # noqa: E402
from rankpilot.platform.db import Base, set_session_maker  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"

PRICE_TIERS = {
    "price_starter_monthly": SubscriptionTier.STARTER,
    "price_pro_monthly": SubscriptionTier.PROFESSIONAL,
    "price_agency_monthly": SubscriptionTier.AGENCY,
}


def build_billing_config(**overrides) -> BillingConfig:
    """Billing configuration used by the test-suite, with field overrides."""
    values = {
        "stripe": StripeConfig(
            api_key="sk_test_123",
            webhook_secret=WEBHOOK_SECRET,
            api_base_url="https://stripe.test",
            request_timeout_seconds=1.0,
        ),
        "dunning": DunningConfig(),
        "price_tiers": PRICE_TIERS,
    }
    values.update(overrides)
    return BillingConfig(**values)


@pytest.fixture
def make_billing_config():
    """Factory for billing configurations with field overrides."""
    return build_billing_config


@pytest.fixture
def billing_config() -> BillingConfig:
    return build_billing_config()


@pytest.fixture(autouse=True)
def install_billing_config(billing_config):
    """Install the test billing configuration and metrics globally."""
    set_billing_config(billing_config)
    set_billing_metrics(BillingMetrics())
    yield
    set_billing_config(None)
    set_billing_metrics(None)


@pytest.fixture
def account_id() -> str:
    return str(uuid4())


@pytest_asyncio.fixture
async def async_db_engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_db_engine):
    maker = async_sessionmaker(
        bind=async_db_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    set_session_maker(maker)
    yield maker
    set_session_maker(None)


@pytest_asyncio.fixture
async def async_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def auth_headers(account_id):
    """Bearer headers for the test account; pass roles for elevated callers."""
    from rankpilot.platform.auth.core import create_access_token

    def _headers(subject: str | None = None, roles: list[str] | None = None) -> dict[str, str]:
        token = create_access_token(subject or account_id, additional_claims={"roles": roles or []})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def test_app(billing_config):
    from rankpilot.platform.main import create_app

    return create_app(billing_config)


@pytest_asyncio.fixture
async def api_client(test_app, async_session):
    """Async HTTP client bound to the test app and the test session."""
    from httpx import ASGITransport, AsyncClient

    from rankpilot.platform.db import get_async_session

    async def override_session():
        yield async_session

    test_app.dependency_overrides[get_async_session] = override_session
    transport = ASGITransport(app=test_app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    test_app.dependency_overrides.clear()
