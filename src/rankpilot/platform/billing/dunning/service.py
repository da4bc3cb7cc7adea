"""
Dunning controller.

Grace-period state machine per subscription record:

    active --(payment failed)--> grace period (status past_due)
    grace period --(payment failed, same or older invoice)--> unchanged
    grace period --(payment failed, later invoice)--> grace period restarted
    grace period --(payment succeeded)--> active
    grace period --(grace end elapses)--> canceled_for_nonpayment

A payment event for a record whose grace end has passed applies the expiry
before the event, so the outcome never depends on whether a read or the sweep
ran first.

Expiry happens lazily whenever a record is read (``expire_if_due``) and in a
periodic sweep (``process_expired_grace_periods``). This service owns every
grace-period field on the record.
"""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.billing.config import BillingConfig, ExpiryPolicy, get_billing_config
from rankpilot.platform.billing.dunning.models import GraceOutcome, SweepSummary
from rankpilot.platform.billing.metrics import BillingMetrics, get_billing_metrics
from rankpilot.platform.billing.subscriptions.models import (
    SubscriptionRecord,
    SubscriptionStatus,
)
from rankpilot.platform.billing.subscriptions.store import SubscriptionStore
from rankpilot.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)


class DunningService:
    """Grace periods, expiry and the periodic sweep."""

    def __init__(
        self,
        db: AsyncSession,
        config: BillingConfig | None = None,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.db = db
        self.config = config or get_billing_config()
        self.metrics = metrics or get_billing_metrics()
        self.store = SubscriptionStore(db)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.config.dunning.grace_period_days)

    def handle_payment_failed(
        self,
        record: SubscriptionRecord,
        invoice_id: str,
        invoice_created: datetime,
        now: datetime | None = None,
    ) -> GraceOutcome:
        """
        Start or extend the grace period for a failed invoice.

        A repeated failure for the invoice that opened the current grace period,
        or for an older invoice, leaves the window untouched. A failure for a
        later invoice restarts the window from ``now``. A grace period that
        has already lapsed is expired first, so the failure is ignored. The caller
        persists.
        """
        now = now or datetime.now(UTC)
        self.expire_if_due(record, now)

        if record.is_canceled:
            logger.info(
                "billing.dunning.payment_failed_ignored",
                account_id=record.account_id,
                status=record.status.value,
                invoice_id=invoice_id,
            )
            return GraceOutcome.IGNORED

        if record.in_grace_period:
            if invoice_id == record.grace_invoice_id or (
                record.grace_invoice_created_at is not None
                and invoice_created <= record.grace_invoice_created_at
            ):
                logger.info(
                    "billing.dunning.grace_unchanged",
                    account_id=record.account_id,
                    invoice_id=invoice_id,
                    grace_invoice_id=record.grace_invoice_id,
                    grace_period_ends_at=record.grace_period_ends_at.isoformat()
                    if record.grace_period_ends_at
                    else None,
                )
                return GraceOutcome.UNCHANGED

            self._open_grace(record, invoice_id, invoice_created, now)
            self.metrics.record_grace_extended(record.tier.value)
            logger.warning(
                "billing.dunning.grace_extended",
                account_id=record.account_id,
                invoice_id=invoice_id,
                grace_period_ends_at=record.grace_period_ends_at.isoformat(),  # type: ignore[union-attr]
            )
            return GraceOutcome.EXTENDED

        previous_status = record.status
        self._open_grace(record, invoice_id, invoice_created, now)
        self.metrics.record_grace_started(record.tier.value)

        logger.warning(
            "billing.dunning.grace_started",
            account_id=record.account_id,
            tier=record.tier.value,
            invoice_id=invoice_id,
            grace_period_ends_at=record.grace_period_ends_at.isoformat(),  # type: ignore[union-attr]
        )
        log_audit_event(
            "subscription.grace_period_started",
            category="billing",
            account_id=record.account_id,
            resource_type="subscription",
            resource_id=record.external_subscription_id,
            previous_status=previous_status.value,
            new_status=record.status.value,
        )

        if record.tier in self.config.dunning.high_value_tiers:
            # Operator-facing alert for paying tiers
            logger.warning(
                "billing.dunning.high_value_payment_failure",
                account_id=record.account_id,
                tier=record.tier.value,
                external_customer_id=record.external_customer_id,
                invoice_id=invoice_id,
            )

        return GraceOutcome.STARTED

    def handle_payment_succeeded(
        self, record: SubscriptionRecord, now: datetime | None = None
    ) -> bool:
        """
        Clear any grace period and reactivate. Returns True when the record changed.

        A payment arriving after the grace period lapsed does not reactivate:
        the record is expired instead and stays canceled.
        """
        now = now or datetime.now(UTC)
        if self.expire_if_due(record, now):
            return True
        if record.is_canceled:
            return False

        changed = record.status != SubscriptionStatus.ACTIVE or record.grace_period_ends_at is not None
        had_grace = record.grace_period_ends_at is not None
        previous_status = record.status

        self._clear_grace(record)
        record.status = SubscriptionStatus.ACTIVE

        if had_grace:
            self.metrics.record_grace_cleared(record.tier.value)
            logger.info("billing.dunning.grace_cleared", account_id=record.account_id)
        if changed:
            log_audit_event(
                "subscription.reactivated",
                category="billing",
                account_id=record.account_id,
                resource_type="subscription",
                resource_id=record.external_subscription_id,
                previous_status=previous_status.value,
                new_status=record.status.value,
            )
        return changed

    def clear_grace(self, record: SubscriptionRecord) -> bool:
        """Drop grace-period state without touching the status."""
        if record.grace_period_ends_at is None and record.grace_invoice_id is None:
            return False
        had_grace = record.grace_period_ends_at is not None
        self._clear_grace(record)
        if had_grace:
            self.metrics.record_grace_cleared(record.tier.value)
        return True

    def expire_if_due(self, record: SubscriptionRecord, now: datetime | None = None) -> bool:
        """Apply the expiry transition when the grace period has elapsed."""
        now = now or datetime.now(UTC)
        if not record.grace_expired(now):
            return False

        policy = self.config.dunning.expiry_policy
        previous_tier = record.tier

        record.status = SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        record.canceled_at = now
        record.cancel_at_period_end = False
        self._clear_grace(record)
        if policy == ExpiryPolicy.DOWNGRADE:
            record.tier = self.config.dunning.downgrade_tier

        self.metrics.record_grace_expired(previous_tier.value, policy.value)
        logger.warning(
            "billing.dunning.grace_expired",
            account_id=record.account_id,
            policy=policy.value,
            previous_tier=previous_tier.value,
            tier=record.tier.value,
        )
        log_audit_event(
            "subscription.canceled_for_nonpayment",
            category="billing",
            account_id=record.account_id,
            resource_type="subscription",
            resource_id=record.external_subscription_id,
            policy=policy.value,
            previous_tier=previous_tier.value,
            new_tier=record.tier.value,
        )
        return True

    async def expire_account_if_due(
        self, account_id: str, now: datetime | None = None
    ) -> SubscriptionRecord | None:
        """Lock, expire and persist one account's record when due."""
        record = await self.store.get(account_id, for_update=True)
        if record is None:
            return None
        if self.expire_if_due(record, now):
            await self.store.save(record)
        return record

    async def process_expired_grace_periods(self, now: datetime | None = None) -> SweepSummary:
        """
        Expire every record whose grace period has ended.

        Each record is handled in its own savepoint so one failure does not
        abort the sweep. The caller commits.
        """
        now = now or datetime.now(UTC)
        account_ids = await self.store.list_due_for_expiry(now)
        summary = SweepSummary(checked=len(account_ids), timestamp=now)

        logger.info("billing.dunning.sweep_started", due=len(account_ids))

        for account_id in account_ids:
            try:
                async with self.db.begin_nested():
                    record = await self.store.get(account_id, for_update=True)
                    if record is not None and self.expire_if_due(record, now):
                        await self.store.save(record)
                        summary.expired += 1
            except Exception as e:
                summary.errors += 1
                summary.failed_accounts.append(account_id)
                logger.error(
                    "billing.dunning.sweep_record_failed",
                    account_id=account_id,
                    error=str(e),
                    exc_info=True,
                )

        logger.info(
            "billing.dunning.sweep_completed",
            checked=summary.checked,
            expired=summary.expired,
            errors=summary.errors,
        )
        return summary

    def _open_grace(
        self,
        record: SubscriptionRecord,
        invoice_id: str,
        invoice_created: datetime,
        now: datetime,
    ) -> None:
        record.status = SubscriptionStatus.PAST_DUE
        record.grace_period_ends_at = now + self.grace_period
        record.grace_invoice_id = invoice_id
        record.grace_invoice_created_at = invoice_created
        record.payment_failed_at = now

    @staticmethod
    def _clear_grace(record: SubscriptionRecord) -> None:
        record.grace_period_ends_at = None
        record.grace_invoice_id = None
        record.grace_invoice_created_at = None
        record.payment_failed_at = None
