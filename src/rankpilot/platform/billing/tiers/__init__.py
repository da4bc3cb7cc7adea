"""
Tier catalog: subscription tiers, metered resource kinds, quotas and entitlements.
"""

from rankpilot.platform.billing.tiers.catalog import (
    DEFAULT_TIER_FEATURES,
    DEFAULT_TIER_LIMITS,
    TierCatalog,
    normalize_limit,
)
from rankpilot.platform.billing.tiers.models import (
    UNLIMITED,
    ResourceKind,
    SubscriptionTier,
    TierDefinition,
    TierResponse,
)

__all__ = [
    "DEFAULT_TIER_FEATURES",
    "DEFAULT_TIER_LIMITS",
    "TierCatalog",
    "normalize_limit",
    "UNLIMITED",
    "ResourceKind",
    "SubscriptionTier",
    "TierDefinition",
    "TierResponse",
]
