"""
Quota gate schemas.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from rankpilot.platform.billing.subscriptions.models import SubscriptionStatus
from rankpilot.platform.billing.tiers import ResourceKind, SubscriptionTier
from rankpilot.platform.billing.usage import QuotaUsage


class DenialReason(str, Enum):
    """Why an admission was refused."""

    QUOTA_EXCEEDED = "quota_exceeded"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"


class AdmissionDecision(BaseModel):
    """Outcome of a quota gate check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: DenialReason | None = None
    account_id: str
    resource_kind: ResourceKind
    tier: SubscriptionTier
    status: SubscriptionStatus
    limit: int | None = None
    used: int = 0
    remaining: int | None = None


class QuotaSnapshot(BaseModel):
    """Current usage against limits for every metered resource."""

    tier: SubscriptionTier
    status: SubscriptionStatus
    period_start: datetime
    period_end: datetime
    quotas: dict[ResourceKind, QuotaUsage] = Field(default_factory=dict)
