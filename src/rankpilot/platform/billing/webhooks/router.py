"""
Webhook endpoints for payment providers.

Signature and payload failures surface as ``BillingError`` (400) through the
application exception handler; anything else is an internal fault (500) so the
provider retries delivery.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.billing.webhooks.handlers import StripeWebhookHandler
from rankpilot.platform.db import get_async_session

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Billing - Webhooks"])


def get_stripe_webhook_handler(
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> StripeWebhookHandler:
    """Dependency to get StripeWebhookHandler instance."""
    return StripeWebhookHandler(db)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    handler: Annotated[StripeWebhookHandler, Depends(get_stripe_webhook_handler)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> dict[str, Any]:
    """
    Receive a Stripe event.

    Always answers 200 once the signature is valid and processing did not
    raise, including for unknown event types and unresolvable accounts.
    """
    payload = await request.body()
    result = await handler.handle_webhook(payload, stripe_signature)
    return {"received": True, **result}
