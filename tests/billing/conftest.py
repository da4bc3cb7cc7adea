"""Shared fixtures for billing tests: Stripe events, signatures and records."""

import json
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio

from rankpilot.platform.billing.metrics import BillingMetrics
from rankpilot.platform.billing.subscriptions.models import SubscriptionRecord, SubscriptionStatus
from rankpilot.platform.billing.tiers import SubscriptionTier
from rankpilot.platform.billing.webhooks.handlers import StripeWebhookHandler
from rankpilot.platform.billing.webhooks.provider import StripeClient, build_stripe_signature_header

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def mock_metrics():
    return MagicMock(spec=BillingMetrics)


@pytest.fixture
def stripe_event():
    """Build a raw Stripe event body."""

    def _build(
        event_type: str,
        data_object: dict[str, Any],
        *,
        event_id: str | None = None,
        created: datetime = NOW,
    ) -> bytes:
        return json.dumps(
            {
                "id": event_id or f"evt_{uuid4().hex[:24]}",
                "object": "event",
                "type": event_type,
                "created": int(created.timestamp()),
                "livemode": False,
                "data": {"object": data_object},
            }
        ).encode()

    return _build


@pytest.fixture
def sign(billing_config):
    """Sign a payload the way Stripe does, timestamped at ``at``."""

    def _sign(payload: bytes, at: datetime = NOW, secret: str | None = None) -> str:
        return build_stripe_signature_header(
            payload,
            secret or billing_config.stripe.webhook_secret,
            timestamp=int(at.timestamp()),
        )

    return _sign


@pytest.fixture
def subscription_object():
    """Stripe subscription object carrying the account id in metadata."""

    def _build(
        account_id: str | None,
        *,
        subscription_id: str = "sub_123",
        customer_id: str = "cus_123",
        price_id: str = "price_pro_monthly",
        status: str = "active",
        cancel_at_period_end: bool = False,
    ) -> dict[str, Any]:
        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "metadata": {"account_id": account_id} if account_id else {},
            "items": {"object": "list", "data": [{"price": {"id": price_id}}]},
        }

    return _build


@pytest.fixture
def invoice_object():
    """Stripe invoice object for a subscription."""

    def _build(
        *,
        invoice_id: str = "in_001",
        subscription_id: str | None = "sub_123",
        customer_id: str = "cus_123",
        price_id: str = "price_pro_monthly",
        created: datetime = NOW,
        account_id: str | None = None,
    ) -> dict[str, Any]:
        invoice: dict[str, Any] = {
            "id": invoice_id,
            "object": "invoice",
            "customer": customer_id,
            "subscription": subscription_id,
            "created": int(created.timestamp()),
            "lines": {"object": "list", "data": [{"price": {"id": price_id}}]},
        }
        if account_id:
            invoice["subscription_details"] = {"metadata": {"account_id": account_id}}
        return invoice

    return _build


@pytest.fixture
def stripe_api():
    """
    Programmable Stripe REST API.

    Map a subscription id to a response body, an ``httpx.Response`` or an
    exception instance; unknown ids answer 404.
    """
    responses: dict[str, Any] = {}
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        subscription_id = request.url.path.rsplit("/", 1)[-1]
        response = responses.get(subscription_id)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        if response is None:
            return httpx.Response(404, json={"error": {"message": "No such subscription"}})
        return httpx.Response(200, json=response)

    transport = httpx.MockTransport(_handler)
    transport.responses = responses  # type: ignore[attr-defined]
    transport.requests = requests  # type: ignore[attr-defined]
    return transport


@pytest.fixture
def stripe_client(billing_config, stripe_api):
    return StripeClient(billing_config.stripe, transport=stripe_api)


@pytest.fixture
def webhook_handler(async_session, billing_config, stripe_client, mock_metrics):
    return StripeWebhookHandler(
        async_session, billing_config, client=stripe_client, metrics=mock_metrics
    )


@pytest_asyncio.fixture
async def subscription_factory(async_session):
    """Persist and commit a subscription record."""

    async def _create(
        account_id: str | None = None,
        *,
        tier: SubscriptionTier = SubscriptionTier.PROFESSIONAL,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        **fields: Any,
    ) -> SubscriptionRecord:
        record = SubscriptionRecord.new(account_id or str(uuid4()), tier=tier, status=status)
        for name, value in fields.items():
            setattr(record, name, value)
        async_session.add(record)
        await async_session.commit()
        return record

    return _create
