"""
Billing module configuration

Built once at process start from ``Settings`` and immutable afterwards.
"""

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rankpilot.platform.billing.exceptions import BillingConfigurationError
from rankpilot.platform.billing.tiers import SubscriptionTier, TierCatalog

if TYPE_CHECKING:
    from rankpilot.platform.settings import Settings


class ExpiryPolicy(str, Enum):
    """What happens when a grace period ends without payment."""

    DOWNGRADE = "downgrade"
    SUSPEND = "suspend"


class StripeConfig(BaseModel):
    """Stripe configuration"""

    model_config = ConfigDict(frozen=True)

    api_key: str = Field("", description="Stripe secret API key")
    webhook_secret: str | None = Field(None, description="Stripe webhook signing secret")
    api_base_url: str = Field("https://api.stripe.com", description="Stripe REST API base URL")
    request_timeout_seconds: float = Field(
        5.0, gt=0, description="Timeout for subscription re-fetches"
    )
    webhook_tolerance_seconds: int = Field(
        300, ge=0, description="Maximum age of a signed webhook timestamp"
    )


class DunningConfig(BaseModel):
    """Grace period and expiry policy"""

    model_config = ConfigDict(frozen=True)

    grace_period_days: int = Field(7, gt=0, description="Grace period after a failed payment")
    downgrade_tier: SubscriptionTier = Field(
        SubscriptionTier.STARTER, description="Tier applied when a grace period expires"
    )
    expiry_policy: ExpiryPolicy = Field(ExpiryPolicy.DOWNGRADE, description="Expiry policy")
    sweep_interval_seconds: int = Field(3600, gt=0, description="Grace-period sweep interval")
    high_value_tiers: frozenset[SubscriptionTier] = Field(
        default_factory=lambda: frozenset({SubscriptionTier.PROFESSIONAL, SubscriptionTier.AGENCY}),
        description="Tiers that raise an operator alert when a grace period opens",
    )


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    stripe: StripeConfig = Field(default_factory=StripeConfig)
    dunning: DunningConfig = Field(default_factory=DunningConfig)

    # Stripe price id -> internal tier
    price_tiers: Mapping[str, SubscriptionTier] = Field(
        default_factory=dict, validate_default=True
    )
    account_metadata_key: str = Field(
        "account_id", description="Subscription metadata key holding the account id"
    )
    catalog: TierCatalog = Field(default_factory=TierCatalog.build)

    @field_validator("price_tiers", mode="after")
    @classmethod
    def _freeze_price_tiers(
        cls, value: Mapping[str, SubscriptionTier]
    ) -> Mapping[str, SubscriptionTier]:
        return MappingProxyType(dict(value))

    def tier_for_price(self, price_id: str | None) -> SubscriptionTier | None:
        if not price_id:
            return None
        return self.price_tiers.get(price_id)

    @classmethod
    def from_settings(cls, settings: "Settings | None" = None) -> "BillingConfig":
        """Create configuration from settings"""
        if settings is None:
            from rankpilot.platform.settings import settings as _settings

            settings = _settings

        billing = settings.billing

        try:
            price_tiers = {
                price_id: SubscriptionTier(tier) for price_id, tier in billing.price_tiers.items()
            }
        except ValueError as exc:
            raise BillingConfigurationError(
                f"Unknown tier in price mapping: {exc}", config_key="billing.price_tiers"
            ) from exc

        try:
            dunning = DunningConfig(
                grace_period_days=billing.grace_period_days,
                downgrade_tier=SubscriptionTier(billing.downgrade_tier),
                expiry_policy=ExpiryPolicy(billing.expiry_policy),
                sweep_interval_seconds=billing.sweep_interval_seconds,
                high_value_tiers=frozenset(SubscriptionTier(t) for t in billing.high_value_tiers),
            )
        except ValueError as exc:
            raise BillingConfigurationError(
                f"Invalid dunning configuration: {exc}", config_key="billing"
            ) from exc

        return cls(
            stripe=StripeConfig(
                api_key=billing.stripe_api_key,
                webhook_secret=billing.stripe_webhook_secret or None,
                api_base_url=billing.stripe_api_base_url,
                request_timeout_seconds=billing.stripe_request_timeout_seconds,
                webhook_tolerance_seconds=billing.webhook_tolerance_seconds,
            ),
            dunning=dunning,
            price_tiers=price_tiers,
            account_metadata_key=billing.account_metadata_key,
            catalog=TierCatalog.build(billing.tier_limits),
        )


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_settings()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set the global billing configuration instance"""
    global _billing_config
    _billing_config = config
