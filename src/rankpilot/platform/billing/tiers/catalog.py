"""
Tier catalog.

Maps each subscription tier to its quotas and entitled features. The catalog is
built once from configuration and never mutated afterwards.
"""

from collections.abc import Iterator, Mapping

import structlog

from rankpilot.platform.billing.exceptions import (
    BillingConfigurationError,
    QuotaConfigurationError,
)
from rankpilot.platform.billing.tiers.models import (
    UNLIMITED,
    ResourceKind,
    SubscriptionTier,
    TierDefinition,
)

logger = structlog.get_logger(__name__)

# -1 in configuration input means unlimited
UNLIMITED_CONFIG_VALUE = -1

DEFAULT_TIER_LIMITS: dict[SubscriptionTier, dict[ResourceKind, int]] = {
    SubscriptionTier.STARTER: {
        ResourceKind.AUDIT: 10,
        ResourceKind.KEYWORD_SEARCH: 50,
    },
    SubscriptionTier.PROFESSIONAL: {
        ResourceKind.AUDIT: 50,
        ResourceKind.KEYWORD_SEARCH: 500,
    },
    SubscriptionTier.AGENCY: {
        ResourceKind.AUDIT: UNLIMITED_CONFIG_VALUE,
        ResourceKind.KEYWORD_SEARCH: UNLIMITED_CONFIG_VALUE,
    },
}

_STARTER_FEATURES = frozenset({"basic_audits", "keyword_research", "pdf_reports"})
_PROFESSIONAL_FEATURES = _STARTER_FEATURES | {
    "competitor_analysis",
    "rank_tracking",
    "white_label_reports",
    "api_access",
}
_AGENCY_FEATURES = _PROFESSIONAL_FEATURES | {
    "priority_support",
    "custom_integrations",
    "team_collaboration",
    "advanced_analytics",
}

DEFAULT_TIER_FEATURES: dict[SubscriptionTier, frozenset[str]] = {
    SubscriptionTier.STARTER: _STARTER_FEATURES,
    SubscriptionTier.PROFESSIONAL: _PROFESSIONAL_FEATURES,
    SubscriptionTier.AGENCY: _AGENCY_FEATURES,
}

TIER_RANKS: dict[SubscriptionTier, int] = {
    SubscriptionTier.STARTER: 1,
    SubscriptionTier.PROFESSIONAL: 2,
    SubscriptionTier.AGENCY: 3,
}


def normalize_limit(value: int | None, tier: SubscriptionTier | None = None) -> int | None:
    """Normalize a configured limit: -1 or None become unlimited, other values must be positive."""
    if value is UNLIMITED or value == UNLIMITED_CONFIG_VALUE:
        return UNLIMITED
    if value <= 0:
        raise QuotaConfigurationError(
            f"Invalid quota limit {value}" + (f" for tier {tier.value}" if tier else ""),
            limit=value,
            tier=tier.value if tier else None,
        )
    return value


class TierCatalog:
    """Static mapping of subscription tier to quotas and entitlements."""

    def __init__(self, definitions: Mapping[SubscriptionTier, TierDefinition]) -> None:
        missing = [tier.value for tier in SubscriptionTier if tier not in definitions]
        if missing:
            raise QuotaConfigurationError(
                f"Tier catalog is missing definitions for: {', '.join(missing)}", limit=0
            )
        for definition in definitions.values():
            for limit in definition.limits.values():
                if limit is not UNLIMITED and limit <= 0:
                    raise QuotaConfigurationError(
                        f"Invalid quota limit {limit} for tier {definition.tier.value}",
                        limit=limit,
                        tier=definition.tier.value,
                    )
        self._definitions = dict(definitions)

    @classmethod
    def build(
        cls, overrides: Mapping[str, Mapping[str, int]] | None = None
    ) -> "TierCatalog":
        """Build the catalog from the default tables plus per-tier limit overrides."""
        overrides = overrides or {}
        definitions: dict[SubscriptionTier, TierDefinition] = {}

        for tier in SubscriptionTier:
            raw_limits: dict[ResourceKind, int] = dict(DEFAULT_TIER_LIMITS[tier])
            for kind_name, value in overrides.get(tier.value, {}).items():
                try:
                    raw_limits[ResourceKind(kind_name)] = value
                except ValueError as exc:
                    raise BillingConfigurationError(
                        f"Unknown resource kind '{kind_name}' in limits for tier {tier.value}",
                        config_key=f"tier_limits.{tier.value}",
                    ) from exc

            definitions[tier] = TierDefinition(
                tier=tier,
                display_name=tier.value.title(),
                rank=TIER_RANKS[tier],
                limits={kind: normalize_limit(value, tier) for kind, value in raw_limits.items()},
                features=DEFAULT_TIER_FEATURES[tier],
            )

        unknown = set(overrides) - {tier.value for tier in SubscriptionTier}
        if unknown:
            logger.warning("billing.tiers.unknown_override", tiers=sorted(unknown))

        return cls(definitions)

    def __iter__(self) -> Iterator[TierDefinition]:
        return iter(sorted(self._definitions.values(), key=lambda d: d.rank))

    def limit_for(self, tier: SubscriptionTier, resource_kind: ResourceKind) -> int | None:
        return self._definitions[tier].limit_for(resource_kind)

    def features_for(self, tier: SubscriptionTier) -> frozenset[str]:
        return self._definitions[tier].features

    def has_feature(self, tier: SubscriptionTier, feature: str) -> bool:
        return self._definitions[tier].has_feature(feature)

    def rank(self, tier: SubscriptionTier) -> int:
        return self._definitions[tier].rank

    def meets(self, tier: SubscriptionTier, minimum: SubscriptionTier) -> bool:
        """Whether ``tier`` ranks at or above ``minimum``."""
        return self.rank(tier) >= self.rank(minimum)

    @property
    def lowest_tier(self) -> SubscriptionTier:
        return min(self._definitions.values(), key=lambda d: d.rank).tier
