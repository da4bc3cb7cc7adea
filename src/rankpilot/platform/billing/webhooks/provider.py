"""
Stripe provider adapter.

Webhook signature verification and canonical subscription retrieval over the
Stripe REST API.
"""

import hashlib
import hmac
import time
from typing import Any

import httpx
import structlog

from rankpilot.platform.billing.config import StripeConfig
from rankpilot.platform.billing.exceptions import ProviderUnavailableError, WebhookSignatureError

logger = structlog.get_logger(__name__)

SIGNATURE_SCHEME = "v1"


def compute_stripe_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over ``"{timestamp}.{payload}"`` as hex."""
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_stripe_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header value for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_stripe_signature(payload, secret, timestamp)}"


def verify_stripe_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str | None,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """
    Verify a ``Stripe-Signature`` header.

    Raises:
        WebhookSignatureError: secret not configured, header missing or
            malformed, timestamp outside the tolerance, or no matching signature
    """
    if not secret:
        logger.error("billing.webhook.secret_not_configured")
        raise WebhookSignatureError("Webhook signing secret not configured", provider="stripe")
    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature", provider="stripe")

    timestamp: int | None = None
    signatures: list[str] = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError(
                    "Invalid webhook signature timestamp", provider="stripe"
                ) from None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Invalid webhook signature header", provider="stripe")

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError(
            "Webhook timestamp outside the tolerance window", provider="stripe"
        )

    expected = compute_stripe_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Invalid webhook signature", provider="stripe")


class StripeClient:
    """Minimal Stripe REST client for authoritative subscription reads."""

    def __init__(
        self,
        config: StripeConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.api_base_url,
            auth=(self.config.api_key, ""),
            timeout=httpx.Timeout(self.config.request_timeout_seconds),
            transport=self._transport,
        )

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        """
        Fetch ``GET /v1/subscriptions/{id}`` within the configured timeout.

        Raises:
            ProviderUnavailableError: not configured, timed out, transport
                failure, non-2xx response or a non-object body
        """
        operation = "retrieve_subscription"
        if not self.config.api_key:
            raise ProviderUnavailableError("Stripe API key not configured", operation=operation)

        try:
            async with self._client() as client:
                response = await client.get(f"/v1/subscriptions/{subscription_id}")
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(
                f"Timed out fetching subscription {subscription_id}", operation=operation
            ) from e
        except httpx.HTTPStatusError as e:
            raise ProviderUnavailableError(
                f"Stripe returned {e.response.status_code} for subscription {subscription_id}",
                operation=operation,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderUnavailableError(
                f"Failed to fetch subscription {subscription_id}: {e}", operation=operation
            ) from e

        if not isinstance(body, dict):
            raise ProviderUnavailableError(
                f"Unexpected response body for subscription {subscription_id}", operation=operation
            )
        return body
