"""
Subscription API schemas.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from rankpilot.platform.billing.subscriptions.models import SubscriptionStatus
from rankpilot.platform.billing.tiers import SubscriptionTier


class SubscriptionResponse(BaseModel):
    """Subscription state as reported to the account owner."""

    model_config = ConfigDict(from_attributes=True)

    account_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    external_customer_id: str | None = None
    created_at: datetime | None = None
    grace_period_ends_at: datetime | None = None
    cancel_at_period_end: bool = False
    in_grace_period: bool = False


class FeatureListResponse(BaseModel):
    tier: SubscriptionTier
    status: SubscriptionStatus
    features: list[str] = Field(default_factory=list)


class FeatureAccessResponse(BaseModel):
    feature: str
    has_access: bool
    tier: SubscriptionTier
    upgrade_url: str | None = None


class SubscriptionSummary(BaseModel):
    """Counts across all subscription records for admin reporting."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_tier: dict[str, int] = Field(default_factory=dict)
    in_grace_period: int = 0
    expired_grace_period: int = Field(
        0, description="Grace period ended but the record has not been expired yet"
    )
    timestamp: datetime
