"""
Subscription query endpoints.

Read-only views of the caller's subscription, quotas and entitlements. Reads
may persist a lazy grace-period expiry, so each handler commits.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends

from rankpilot.platform.auth.core import UserInfo, get_current_user, require_admin
from rankpilot.platform.billing.quotas.dependencies import get_quota_gate, get_subscription_service
from rankpilot.platform.billing.quotas.gate import QuotaGate
from rankpilot.platform.billing.quotas.schemas import QuotaSnapshot
from rankpilot.platform.billing.subscriptions.schemas import (
    FeatureAccessResponse,
    FeatureListResponse,
    SubscriptionResponse,
    SubscriptionSummary,
)
from rankpilot.platform.billing.subscriptions.service import SubscriptionService
from rankpilot.platform.billing.tiers import TierResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Billing - Subscriptions"])


@router.get("/me", response_model=SubscriptionResponse)
async def get_my_subscription(
    current_user: Annotated[UserInfo, Depends(get_current_user)],
    service: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> SubscriptionResponse:
    """Get the caller's subscription tier and status."""
    subscription = await service.subscription_for(current_user.account_id)
    await service.db.commit()
    return subscription


@router.get("/quotas", response_model=QuotaSnapshot)
async def get_my_quotas(
    current_user: Annotated[UserInfo, Depends(get_current_user)],
    gate: Annotated[QuotaGate, Depends(get_quota_gate)],
) -> QuotaSnapshot:
    """Get usage against limits for the current billing month."""
    snapshot = await gate.quotas_for(current_user.account_id)
    await gate.db.commit()
    return snapshot


@router.get("/features", response_model=FeatureListResponse)
async def get_my_features(
    current_user: Annotated[UserInfo, Depends(get_current_user)],
    service: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> FeatureListResponse:
    """List the features included in the caller's tier."""
    features = await service.features_for(current_user.account_id)
    await service.db.commit()
    return features


@router.get("/features/{feature_name}", response_model=FeatureAccessResponse)
async def check_feature(
    feature_name: str,
    current_user: Annotated[UserInfo, Depends(get_current_user)],
    service: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> FeatureAccessResponse:
    """Check whether the caller's tier includes a feature."""
    access = await service.feature_access(current_user.account_id, feature_name)
    await service.db.commit()
    return access


@router.get("/tiers", response_model=list[TierResponse])
async def list_tiers(
    service: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> list[TierResponse]:
    """List every tier with its quotas and features."""
    return service.list_tiers()


@router.get("/summary", response_model=SubscriptionSummary)
async def get_subscription_summary(
    _: Annotated[UserInfo, Depends(require_admin)],
    service: Annotated[SubscriptionService, Depends(get_subscription_service)],
) -> SubscriptionSummary:
    """
    Counts by status and tier plus open and lapsed grace periods.

    Requires: admin role
    """
    return await service.summary()
