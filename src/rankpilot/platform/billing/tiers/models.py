"""
Tier models.

Static tier definitions: per-resource monthly limits and feature entitlements.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# Unlimited quota marker. Never compared numerically.
UNLIMITED = None


class SubscriptionTier(str, Enum):
    """Named subscription levels."""

    STARTER = "starter"
    PROFESSIONAL = "professional"
    AGENCY = "agency"


class ResourceKind(str, Enum):
    """Metered resource kinds."""

    AUDIT = "audit"
    KEYWORD_SEARCH = "keyword_search"


class TierDefinition(BaseModel):
    """Quotas and entitlements of one tier."""

    model_config = ConfigDict(frozen=True)

    tier: SubscriptionTier
    display_name: str
    rank: int = Field(..., ge=1, description="Ordering used for minimum-tier checks")
    limits: dict[ResourceKind, int | None] = Field(
        default_factory=dict, description="Monthly limit per resource kind, None for unlimited"
    )
    features: frozenset[str] = Field(default_factory=frozenset)

    def limit_for(self, resource_kind: ResourceKind) -> int | None:
        return self.limits.get(resource_kind, UNLIMITED)

    def has_feature(self, feature: str) -> bool:
        return feature in self.features


class TierResponse(BaseModel):
    """Public representation of a tier for catalog listings."""

    model_config = ConfigDict(from_attributes=True)

    tier: SubscriptionTier
    display_name: str
    rank: int
    limits: dict[ResourceKind, int | None]
    features: list[str]

    @classmethod
    def from_definition(cls, definition: TierDefinition) -> "TierResponse":
        return cls(
            tier=definition.tier,
            display_name=definition.display_name,
            rank=definition.rank,
            limits=dict(definition.limits),
            features=sorted(definition.features),
        )
