"""
Subscription read service.

Every read applies lazy grace-period expiry first, so callers always observe
expired subscriptions even before the sweep has run. Accounts without a stored
record are reported with the lowest tier and an active status; reads never
insert rows.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.billing.config import BillingConfig, ExpiryPolicy, get_billing_config
from rankpilot.platform.billing.dunning.service import DunningService
from rankpilot.platform.billing.subscriptions.models import (
    SubscriptionRecord,
    SubscriptionStatus,
)
from rankpilot.platform.billing.subscriptions.schemas import (
    FeatureAccessResponse,
    FeatureListResponse,
    SubscriptionResponse,
    SubscriptionSummary,
)
from rankpilot.platform.billing.subscriptions.store import SubscriptionStore
from rankpilot.platform.billing.tiers import SubscriptionTier, TierResponse

logger = structlog.get_logger(__name__)

UPGRADE_URL = "/pricing"


class SubscriptionService:
    """Query side of the subscription state store."""

    def __init__(
        self,
        db: AsyncSession,
        config: BillingConfig | None = None,
        dunning: DunningService | None = None,
    ) -> None:
        self.db = db
        self.config = config or get_billing_config()
        self.store = SubscriptionStore(db)
        self.dunning = dunning or DunningService(db, self.config)

    async def current(
        self,
        account_id: str,
        now: datetime | None = None,
        *,
        for_update: bool = False,
    ) -> SubscriptionRecord:
        """
        Load the account's record with lazy expiry applied.

        Expiry is only written under the row lock: an unlocked read that finds a
        lapsed grace period re-reads the row ``FOR UPDATE`` and re-checks, so a
        payment applied concurrently is never overwritten.
        """
        now = now or datetime.now(UTC)
        record = await self.store.get(account_id, for_update=for_update)
        if record is None:
            return SubscriptionRecord.new(account_id, tier=self.config.catalog.lowest_tier)
        if not record.grace_expired(now):
            return record

        if not for_update:
            record = await self.store.get(account_id, for_update=True)
            if record is None:
                return SubscriptionRecord.new(account_id, tier=self.config.catalog.lowest_tier)

        if self.dunning.expire_if_due(record, now):
            logger.info("billing.subscription.lazily_expired", account_id=account_id)
            await self.store.save(record)
        return record

    def is_suspended(self, record: SubscriptionRecord) -> bool:
        return (
            self.config.dunning.expiry_policy == ExpiryPolicy.SUSPEND
            and record.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        )

    async def subscription_for(
        self, account_id: str, now: datetime | None = None
    ) -> SubscriptionResponse:
        record = await self.current(account_id, now)
        return SubscriptionResponse(
            account_id=record.account_id,
            tier=record.tier,
            status=record.status,
            external_customer_id=record.external_customer_id,
            created_at=record.created_at,
            grace_period_ends_at=record.grace_period_ends_at,
            cancel_at_period_end=bool(record.cancel_at_period_end),
            in_grace_period=record.in_grace_period,
        )

    async def features_for(
        self, account_id: str, now: datetime | None = None
    ) -> FeatureListResponse:
        record = await self.current(account_id, now)
        features = (
            [] if self.is_suspended(record) else sorted(self.config.catalog.features_for(record.tier))
        )
        return FeatureListResponse(tier=record.tier, status=record.status, features=features)

    async def feature_access(
        self, account_id: str, feature: str, now: datetime | None = None
    ) -> FeatureAccessResponse:
        record = await self.current(account_id, now)
        has_access = not self.is_suspended(record) and self.config.catalog.has_feature(
            record.tier, feature
        )
        return FeatureAccessResponse(
            feature=feature,
            has_access=has_access,
            tier=record.tier,
            upgrade_url=None if has_access else UPGRADE_URL,
        )

    def list_tiers(self) -> list[TierResponse]:
        return [TierResponse.from_definition(definition) for definition in self.config.catalog]

    def tier_meets(self, tier: SubscriptionTier, minimum: SubscriptionTier) -> bool:
        return self.config.catalog.meets(tier, minimum)

    async def summary(self, now: datetime | None = None) -> SubscriptionSummary:
        """Counts by status and tier plus open and lapsed grace periods."""
        now = now or datetime.now(UTC)
        by_status = await self.store.count_by_status()
        by_tier = await self.store.count_by_tier()
        in_grace, expired = await self.store.count_in_grace(now)

        return SubscriptionSummary(
            total=sum(by_status.values()),
            by_status={status.value: by_status.get(status, 0) for status in SubscriptionStatus},
            by_tier={tier.value: by_tier.get(tier, 0) for tier in SubscriptionTier},
            in_grace_period=in_grace,
            expired_grace_period=expired,
            timestamp=now,
        )
