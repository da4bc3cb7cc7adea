"""
Quota gate.

Request-time admission for resource-creating operations. The subscription row
is read ``FOR UPDATE`` so concurrent admissions for the same account serialize
on PostgreSQL; the usage record is appended in the same transaction. Accounts
without a stored record are not locked and may overshoot by the number of
concurrent requests.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.billing.config import BillingConfig, get_billing_config
from rankpilot.platform.billing.exceptions import UnknownResourceKindError
from rankpilot.platform.billing.metrics import BillingMetrics, get_billing_metrics
from rankpilot.platform.billing.quotas.schemas import (
    AdmissionDecision,
    DenialReason,
    QuotaSnapshot,
)
from rankpilot.platform.billing.subscriptions.service import SubscriptionService
from rankpilot.platform.billing.tiers import ResourceKind
from rankpilot.platform.billing.usage import QuotaLedger

logger = structlog.get_logger(__name__)


def parse_resource_kind(resource_kind: ResourceKind | str) -> ResourceKind:
    if isinstance(resource_kind, ResourceKind):
        return resource_kind
    try:
        return ResourceKind(resource_kind)
    except ValueError:
        raise UnknownResourceKindError(
            f"Unknown resource kind: {resource_kind}", resource_kind=str(resource_kind)
        ) from None


class QuotaGate:
    """Admission checks against tier quotas."""

    def __init__(
        self,
        db: AsyncSession,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.db = db
        self.config = config or get_billing_config()
        self.metrics = metrics or get_billing_metrics()
        self.subscriptions = SubscriptionService(db, self.config)
        self.ledger = QuotaLedger(db)

    async def check_and_reserve(
        self,
        account_id: str,
        resource_kind: ResourceKind | str,
        now: datetime | None = None,
    ) -> AdmissionDecision:
        """
        Admit or deny one unit of ``resource_kind`` for the account.

        An allowed decision appends a usage record; the caller commits.

        Raises:
            UnknownResourceKindError: resource kind is not metered
            QuotaConfigurationError: the tier's limit is zero or negative
        """
        kind = parse_resource_kind(resource_kind)
        now = now or datetime.now(UTC)

        record = await self.subscriptions.current(account_id, now, for_update=True)
        limit = self.config.catalog.limit_for(record.tier, kind)

        if self.subscriptions.is_suspended(record):
            decision = AdmissionDecision(
                allowed=False,
                reason=DenialReason.SUBSCRIPTION_SUSPENDED,
                account_id=account_id,
                resource_kind=kind,
                tier=record.tier,
                status=record.status,
                limit=limit,
                remaining=0,
            )
            self._record(decision)
            return decision

        period_start, period_end = self.ledger.current_period(now)
        used = await self.ledger.usage(account_id, kind, period_start, period_end)
        quota = self.ledger.quota_usage(limit, used)

        if quota.exhausted:
            decision = AdmissionDecision(
                allowed=False,
                reason=DenialReason.QUOTA_EXCEEDED,
                account_id=account_id,
                resource_kind=kind,
                tier=record.tier,
                status=record.status,
                limit=quota.limit,
                used=used,
                remaining=0,
            )
            self._record(decision)
            return decision

        await self.ledger.record_usage(account_id, kind, now)
        decision = AdmissionDecision(
            allowed=True,
            account_id=account_id,
            resource_kind=kind,
            tier=record.tier,
            status=record.status,
            limit=quota.limit,
            used=used + 1,
            remaining=None if quota.limit is None else max(0, quota.limit - used - 1),
        )
        self._record(decision)
        return decision

    async def quotas_for(self, account_id: str, now: datetime | None = None) -> QuotaSnapshot:
        """Quota usage for every resource kind in the current billing window."""
        now = now or datetime.now(UTC)
        record = await self.subscriptions.current(account_id, now)
        period_start, period_end = self.ledger.current_period(now)

        quotas = {}
        for kind in ResourceKind:
            used = await self.ledger.usage(account_id, kind, period_start, period_end)
            quotas[kind] = self.ledger.quota_usage(
                self.config.catalog.limit_for(record.tier, kind), used
            )

        return QuotaSnapshot(
            tier=record.tier,
            status=record.status,
            period_start=period_start,
            period_end=period_end,
            quotas=quotas,
        )

    def _record(self, decision: AdmissionDecision) -> None:
        self.metrics.record_admission(
            decision.tier.value,
            decision.resource_kind.value,
            decision.allowed,
            decision.reason.value if decision.reason else None,
        )
        if decision.allowed:
            logger.debug(
                "billing.quota.admitted",
                account_id=decision.account_id,
                resource_kind=decision.resource_kind.value,
                used=decision.used,
                limit=decision.limit,
            )
        else:
            logger.info(
                "billing.quota.denied",
                account_id=decision.account_id,
                resource_kind=decision.resource_kind.value,
                reason=decision.reason.value if decision.reason else None,
                tier=decision.tier.value,
                used=decision.used,
                limit=decision.limit,
            )
