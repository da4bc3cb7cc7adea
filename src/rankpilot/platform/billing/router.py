"""
Billing API router aggregating the webhook and subscription endpoints.
"""

from fastapi import APIRouter

from rankpilot.platform.billing.subscriptions.router import router as subscriptions_router
from rankpilot.platform.billing.webhooks.router import router as webhooks_router

router = APIRouter(prefix="/billing")

router.include_router(webhooks_router)
router.include_router(subscriptions_router)

__all__ = ["router"]
