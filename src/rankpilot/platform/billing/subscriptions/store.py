"""
Subscription state store.

Point reads, lookups by provider ids and upserts of ``SubscriptionRecord``.
Only the webhook reconciler and the dunning controller write through this store.
"""

from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.billing.subscriptions.models import (
    SubscriptionRecord,
    SubscriptionStatus,
)
from rankpilot.platform.billing.tiers import SubscriptionTier

logger = structlog.get_logger(__name__)


class SubscriptionStore:
    """Datastore access for subscription records."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, account_id: str, *, for_update: bool = False) -> SubscriptionRecord | None:
        """
        Point read by account id, optionally holding a row lock until commit.

        A locked read always reloads the row, replacing any state already held
        in the session.
        """
        stmt = select(SubscriptionRecord).where(SubscriptionRecord.account_id == account_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_subscription_id(
        self, external_subscription_id: str
    ) -> SubscriptionRecord | None:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.external_subscription_id == external_subscription_id)
            .order_by(SubscriptionRecord.updated_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_customer_id(
        self, external_customer_id: str
    ) -> SubscriptionRecord | None:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.external_customer_id == external_customer_id)
            .order_by(SubscriptionRecord.updated_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def save(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Insert or update a record with a single flush."""
        self.db.add(record)
        await self.db.flush()
        logger.debug(
            "billing.subscription.saved",
            account_id=record.account_id,
            tier=record.tier.value,
            status=record.status.value,
        )
        return record

    async def list_due_for_expiry(self, now: datetime) -> list[str]:
        """Account ids whose grace period has ended."""
        stmt = (
            select(SubscriptionRecord.account_id)
            .where(
                SubscriptionRecord.status == SubscriptionStatus.PAST_DUE,
                SubscriptionRecord.grace_period_ends_at.is_not(None),
                SubscriptionRecord.grace_period_ends_at <= now,
            )
            .order_by(SubscriptionRecord.grace_period_ends_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[SubscriptionStatus, int]:
        stmt = select(SubscriptionRecord.status, func.count()).group_by(SubscriptionRecord.status)
        result = await self.db.execute(stmt)
        return {status: count for status, count in result.all()}

    async def count_by_tier(self) -> dict[SubscriptionTier, int]:
        stmt = select(SubscriptionRecord.tier, func.count()).group_by(SubscriptionRecord.tier)
        result = await self.db.execute(stmt)
        return {tier: count for tier, count in result.all()}

    async def count_in_grace(self, now: datetime) -> tuple[int, int]:
        """Accounts in an open grace period and accounts whose grace has lapsed but not been swept."""
        base = select(func.count()).select_from(SubscriptionRecord).where(
            SubscriptionRecord.status == SubscriptionStatus.PAST_DUE,
            SubscriptionRecord.grace_period_ends_at.is_not(None),
        )
        in_grace = await self.db.scalar(base.where(SubscriptionRecord.grace_period_ends_at > now))
        expired = await self.db.scalar(base.where(SubscriptionRecord.grace_period_ends_at <= now))
        return int(in_grace or 0), int(expired or 0)
