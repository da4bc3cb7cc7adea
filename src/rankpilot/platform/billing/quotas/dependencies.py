"""
Quota and entitlement dependencies for resource-creating endpoints.

Usage::

    @router.post("/audits")
    async def create_audit(
        decision: Annotated[AdmissionDecision, Depends(require_quota(ResourceKind.AUDIT))],
    ) -> AuditResponse:
        ...
"""

from collections.abc import Awaitable, Callable
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.auth.core import UserInfo, get_current_user
from rankpilot.platform.billing.exceptions import (
    FeatureNotAvailableError,
    InsufficientTierError,
    QuotaExceededError,
    SubscriptionSuspendedError,
)
from rankpilot.platform.billing.quotas.gate import QuotaGate
from rankpilot.platform.billing.quotas.schemas import AdmissionDecision, DenialReason
from rankpilot.platform.billing.subscriptions.models import SubscriptionRecord
from rankpilot.platform.billing.subscriptions.service import SubscriptionService
from rankpilot.platform.billing.tiers import ResourceKind, SubscriptionTier
from rankpilot.platform.db import get_async_session


def get_quota_gate(
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> QuotaGate:
    """Dependency to get QuotaGate instance."""
    return QuotaGate(db)


def get_subscription_service(
    db: Annotated[AsyncSession, Depends(get_async_session)],
) -> SubscriptionService:
    """Dependency to get SubscriptionService instance."""
    return SubscriptionService(db)


def require_quota(
    resource_kind: ResourceKind,
) -> Callable[..., Awaitable[AdmissionDecision]]:
    """Reserve one unit of ``resource_kind`` or reject the request."""

    async def _check(
        current_user: Annotated[UserInfo, Depends(get_current_user)],
        gate: Annotated[QuotaGate, Depends(get_quota_gate)],
    ) -> AdmissionDecision:
        decision = await gate.check_and_reserve(current_user.account_id, resource_kind)
        # Commit the usage record (or lazy expiry) and release the row lock
        await gate.db.commit()

        if decision.reason == DenialReason.SUBSCRIPTION_SUSPENDED:
            raise SubscriptionSuspendedError(
                "Your subscription was suspended after an unpaid invoice",
                account_id=decision.account_id,
                tier=decision.tier.value,
            )
        if decision.reason == DenialReason.QUOTA_EXCEEDED:
            raise QuotaExceededError(
                f"Monthly {resource_kind.value} quota reached for the {decision.tier.value} plan",
                tier=decision.tier.value,
                resource_kind=resource_kind.value,
                limit=decision.limit or 0,
                used=decision.used,
            )
        return decision

    return _check


def require_feature(feature: str) -> Callable[..., Awaitable[SubscriptionRecord]]:
    """Reject the request unless the account's tier includes ``feature``."""

    async def _check(
        current_user: Annotated[UserInfo, Depends(get_current_user)],
        service: Annotated[SubscriptionService, Depends(get_subscription_service)],
    ) -> SubscriptionRecord:
        record = await service.current(current_user.account_id)
        await service.db.commit()
        if service.is_suspended(record) or not service.config.catalog.has_feature(
            record.tier, feature
        ):
            raise FeatureNotAvailableError(
                f"Feature '{feature}' is not available on the {record.tier.value} plan",
                feature=feature,
                tier=record.tier.value,
            )
        return record

    return _check


def require_tier(minimum: SubscriptionTier) -> Callable[..., Awaitable[SubscriptionRecord]]:
    """Reject the request unless the account's tier ranks at or above ``minimum``."""

    async def _check(
        current_user: Annotated[UserInfo, Depends(get_current_user)],
        service: Annotated[SubscriptionService, Depends(get_subscription_service)],
    ) -> SubscriptionRecord:
        record = await service.current(current_user.account_id)
        await service.db.commit()
        if service.is_suspended(record) or not service.tier_meets(record.tier, minimum):
            raise InsufficientTierError(
                f"This action requires the {minimum.value} plan or higher",
                required_tier=minimum.value,
                tier=record.tier.value,
            )
        return record

    return _check
