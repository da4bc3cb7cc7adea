"""Tests for the Stripe REST client."""

import httpx
import pytest

from rankpilot.platform.billing.config import StripeConfig
from rankpilot.platform.billing.exceptions import ProviderUnavailableError
from rankpilot.platform.billing.webhooks.provider import StripeClient

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
class TestRetrieveSubscription:
    async def test_returns_subscription_body(self, stripe_client, stripe_api):
        stripe_api.responses["sub_123"] = {"id": "sub_123", "status": "active"}

        body = await stripe_client.retrieve_subscription("sub_123")

        assert body == {"id": "sub_123", "status": "active"}
        request = stripe_api.requests[0]
        assert request.method == "GET"
        assert str(request.url) == "https://stripe.test/v1/subscriptions/sub_123"
        assert request.headers["Authorization"].startswith("Basic ")

    async def test_timeout_is_provider_unavailable(self, stripe_client, stripe_api):
        stripe_api.responses["sub_123"] = httpx.ReadTimeout("timed out")

        with pytest.raises(ProviderUnavailableError, match="Timed out") as exc_info:
            await stripe_client.retrieve_subscription("sub_123")

        assert exc_info.value.status_code == 503
        assert exc_info.value.context["operation"] == "retrieve_subscription"

    async def test_error_status_is_provider_unavailable(self, stripe_client, stripe_api):
        stripe_api.responses["sub_123"] = httpx.Response(500, json={"error": {}})

        with pytest.raises(ProviderUnavailableError, match="500"):
            await stripe_client.retrieve_subscription("sub_123")

    async def test_unknown_subscription_is_provider_unavailable(self, stripe_client):
        with pytest.raises(ProviderUnavailableError, match="404"):
            await stripe_client.retrieve_subscription("sub_missing")

    async def test_connection_error_is_provider_unavailable(self, stripe_client, stripe_api):
        stripe_api.responses["sub_123"] = httpx.ConnectError("connection refused")

        with pytest.raises(ProviderUnavailableError, match="Failed to fetch"):
            await stripe_client.retrieve_subscription("sub_123")

    async def test_non_object_body_is_provider_unavailable(self, stripe_client, stripe_api):
        stripe_api.responses["sub_123"] = httpx.Response(200, json=["not", "an", "object"])

        with pytest.raises(ProviderUnavailableError, match="Unexpected response body"):
            await stripe_client.retrieve_subscription("sub_123")

    async def test_missing_api_key_is_provider_unavailable(self, stripe_api):
        client = StripeClient(StripeConfig(api_key=""), transport=stripe_api)

        with pytest.raises(ProviderUnavailableError, match="not configured"):
            await client.retrieve_subscription("sub_123")

        assert stripe_api.requests == []
