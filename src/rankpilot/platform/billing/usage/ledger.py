"""
Quota ledger.

Counts usage records over billing windows and derives remaining/percentage
figures against tier limits. Never mutates tier definitions; the only write is
the append of a new usage record.
"""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.billing.exceptions import QuotaConfigurationError
from rankpilot.platform.billing.tiers import ResourceKind
from rankpilot.platform.billing.usage.models import QuotaUsage, UsageRecord

logger = structlog.get_logger(__name__)

# Percentage of a finite limit at which usage is flagged as near the limit
NEAR_LIMIT_PERCENTAGE = 80


class QuotaLedger:
    """Usage counts and quota arithmetic."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def usage(
        self,
        account_id: str,
        resource_kind: ResourceKind,
        period_start: datetime,
        period_end: datetime,
    ) -> int:
        """Count usage records in the half-open window [period_start, period_end)."""
        stmt = (
            select(func.count())
            .select_from(UsageRecord)
            .where(
                UsageRecord.account_id == account_id,
                UsageRecord.resource_kind == resource_kind,
                UsageRecord.created_at >= period_start,
                UsageRecord.created_at < period_end,
            )
        )
        count = await self.db.scalar(stmt)
        return int(count or 0)

    async def record_usage(
        self,
        account_id: str,
        resource_kind: ResourceKind,
        at: datetime | None = None,
    ) -> UsageRecord:
        """Append a usage record."""
        at = (at or datetime.now(UTC)).astimezone(UTC)
        record = UsageRecord(
            account_id=account_id,
            resource_kind=resource_kind,
            created_at=at,
            usage_date=at.date(),
        )
        self.db.add(record)
        await self.db.flush()
        return record

    @staticmethod
    def current_period(now: datetime | None = None) -> tuple[datetime, datetime]:
        """Calendar month containing ``now``, anchored to UTC."""
        now = (now or datetime.now(UTC)).astimezone(UTC)
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end

    @staticmethod
    def quota_usage(limit: int | None, used: int) -> QuotaUsage:
        """
        Derive remaining and percentage for a limit.

        Unlimited short-circuits to nulls. The percentage rounds half up and is
        capped at 100. A finite limit of zero or below is a configuration error.
        """
        if limit is None:
            return QuotaUsage(
                limit=None, used=used, remaining=None, percentage=None, near_limit=None
            )

        if limit <= 0:
            logger.error("billing.quota.invalid_limit", limit=limit)
            raise QuotaConfigurationError(f"Quota limit must be positive, got {limit}", limit=limit)

        # Halves round up: 1 of 8 is 13%
        exact = Decimal(100 * used) / Decimal(limit)
        percentage = min(100, int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))
        return QuotaUsage(
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
            percentage=percentage,
            near_limit=percentage >= NEAR_LIMIT_PERCENTAGE,
        )
