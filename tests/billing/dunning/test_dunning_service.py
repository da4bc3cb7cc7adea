"""Tests for the dunning controller."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from rankpilot.platform.billing.config import DunningConfig, ExpiryPolicy
from rankpilot.platform.billing.dunning import DunningService, GraceOutcome
from rankpilot.platform.billing.metrics import BillingMetrics
from rankpilot.platform.billing.subscriptions.models import SubscriptionRecord, SubscriptionStatus
from rankpilot.platform.billing.subscriptions.store import SubscriptionStore
from rankpilot.platform.billing.tiers import SubscriptionTier

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def metrics():
    return MagicMock(spec=BillingMetrics)


@pytest.fixture
def service(billing_config, metrics):
    return DunningService(MagicMock(), billing_config, metrics)


@pytest.fixture
def record(account_id):
    record = SubscriptionRecord.new(account_id, tier=SubscriptionTier.PROFESSIONAL)
    record.external_subscription_id = "sub_123"
    return record


class TestPaymentFailed:
    """Grace period start, extension and idempotency."""

    def test_first_failure_starts_grace(self, service, record, metrics):
        outcome = service.handle_payment_failed(record, "in_001", NOW - timedelta(hours=1), NOW)

        assert outcome == GraceOutcome.STARTED
        assert record.status == SubscriptionStatus.PAST_DUE
        assert record.grace_period_ends_at == NOW + timedelta(days=7)
        assert record.grace_invoice_id == "in_001"
        assert record.payment_failed_at == NOW
        assert record.tier == SubscriptionTier.PROFESSIONAL
        metrics.record_grace_started.assert_called_once_with("professional")

    def test_high_value_tier_raises_operator_alert(self, service, record):
        with patch("rankpilot.platform.billing.dunning.service.logger") as mock_logger:
            service.handle_payment_failed(record, "in_001", NOW, NOW)

        events = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert "billing.dunning.high_value_payment_failure" in events

    def test_starter_tier_does_not_alert(self, service, account_id):
        record = SubscriptionRecord.new(account_id, tier=SubscriptionTier.STARTER)

        with patch("rankpilot.platform.billing.dunning.service.logger") as mock_logger:
            service.handle_payment_failed(record, "in_001", NOW, NOW)

        events = [call.args[0] for call in mock_logger.warning.call_args_list]
        assert "billing.dunning.high_value_payment_failure" not in events

    def test_same_invoice_leaves_grace_untouched(self, service, record, metrics):
        service.handle_payment_failed(record, "in_001", NOW, NOW)
        original_end = record.grace_period_ends_at

        outcome = service.handle_payment_failed(
            record, "in_001", NOW, NOW + timedelta(days=3)
        )

        assert outcome == GraceOutcome.UNCHANGED
        assert record.grace_period_ends_at == original_end
        metrics.record_grace_extended.assert_not_called()

    def test_older_invoice_leaves_grace_untouched(self, service, record):
        service.handle_payment_failed(record, "in_002", NOW, NOW)
        original_end = record.grace_period_ends_at

        outcome = service.handle_payment_failed(
            record, "in_001", NOW - timedelta(days=30), NOW + timedelta(days=1)
        )

        assert outcome == GraceOutcome.UNCHANGED
        assert record.grace_period_ends_at == original_end
        assert record.grace_invoice_id == "in_002"

    def test_later_invoice_restarts_grace(self, service, record, metrics):
        service.handle_payment_failed(record, "in_001", NOW, NOW)
        later = NOW + timedelta(days=5)

        outcome = service.handle_payment_failed(record, "in_002", later, later)

        assert outcome == GraceOutcome.EXTENDED
        assert record.grace_period_ends_at == later + timedelta(days=7)
        assert record.grace_invoice_id == "in_002"
        metrics.record_grace_extended.assert_called_once_with("professional")

    def test_later_invoice_after_grace_lapsed_expires(self, service, record, metrics):
        service.handle_payment_failed(record, "in_001", NOW, NOW)
        lapsed = NOW + timedelta(days=30)

        outcome = service.handle_payment_failed(record, "in_002", lapsed, lapsed)

        assert outcome == GraceOutcome.IGNORED
        assert record.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        assert record.tier == SubscriptionTier.STARTER
        assert record.grace_period_ends_at is None
        metrics.record_grace_extended.assert_not_called()
        metrics.record_grace_expired.assert_called_once_with("professional", "downgrade")

    @pytest.mark.parametrize(
        "status", [SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELED_FOR_NONPAYMENT]
    )
    def test_canceled_record_is_ignored(self, service, record, status):
        record.status = status

        outcome = service.handle_payment_failed(record, "in_001", NOW, NOW)

        assert outcome == GraceOutcome.IGNORED
        assert record.grace_period_ends_at is None
        assert record.status == status

    def test_grace_length_is_configurable(self, make_billing_config, metrics, record):
        config = make_billing_config(dunning=DunningConfig(grace_period_days=3))
        service = DunningService(MagicMock(), config, metrics)

        service.handle_payment_failed(record, "in_001", NOW, NOW)

        assert record.grace_period_ends_at == NOW + timedelta(days=3)


class TestPaymentSucceeded:
    def test_clears_grace_and_reactivates(self, service, record, metrics):
        service.handle_payment_failed(record, "in_001", NOW, NOW)

        changed = service.handle_payment_succeeded(record, NOW + timedelta(days=1))

        assert changed
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.grace_period_ends_at is None
        assert record.grace_invoice_id is None
        assert record.payment_failed_at is None
        metrics.record_grace_cleared.assert_called_once_with("professional")

    def test_active_record_is_unchanged(self, service, record):
        assert service.handle_payment_succeeded(record, NOW) is False
        assert record.status == SubscriptionStatus.ACTIVE

    def test_canceled_record_is_not_reactivated(self, service, record):
        record.status = SubscriptionStatus.CANCELED_FOR_NONPAYMENT

        assert service.handle_payment_succeeded(record, NOW) is False
        assert record.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT

    def test_payment_after_grace_lapsed_does_not_reactivate(self, service, record, metrics):
        service.handle_payment_failed(record, "in_001", NOW, NOW)

        changed = service.handle_payment_succeeded(record, NOW + timedelta(days=12))

        assert changed
        assert record.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        assert record.tier == SubscriptionTier.STARTER
        metrics.record_grace_cleared.assert_not_called()


class TestExpiry:
    """Grace expiry under both policies."""

    def test_not_due_is_noop(self, service, record):
        service.handle_payment_failed(record, "in_001", NOW, NOW)

        assert service.expire_if_due(record, NOW + timedelta(days=6, hours=23)) is False
        assert record.status == SubscriptionStatus.PAST_DUE

    def test_downgrade_policy(self, service, record, metrics):
        service.handle_payment_failed(record, "in_001", NOW, NOW)
        expired_at = NOW + timedelta(days=7)

        assert service.expire_if_due(record, expired_at) is True

        assert record.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        assert record.tier == SubscriptionTier.STARTER
        assert record.canceled_at == expired_at
        assert record.grace_period_ends_at is None
        assert record.grace_invoice_id is None
        metrics.record_grace_expired.assert_called_once_with("professional", "downgrade")

    def test_suspend_policy_keeps_tier(self, make_billing_config, metrics, record):
        config = make_billing_config(dunning=DunningConfig(expiry_policy=ExpiryPolicy.SUSPEND))
        service = DunningService(MagicMock(), config, metrics)
        service.handle_payment_failed(record, "in_001", NOW, NOW)

        service.expire_if_due(record, NOW + timedelta(days=8))

        assert record.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        assert record.tier == SubscriptionTier.PROFESSIONAL

    def test_configured_downgrade_tier(self, make_billing_config, metrics, account_id):
        config = make_billing_config(
            dunning=DunningConfig(downgrade_tier=SubscriptionTier.PROFESSIONAL)
        )
        service = DunningService(MagicMock(), config, metrics)
        record = SubscriptionRecord.new(account_id, tier=SubscriptionTier.AGENCY)
        service.handle_payment_failed(record, "in_001", NOW, NOW)

        service.expire_if_due(record, NOW + timedelta(days=8))

        assert record.tier == SubscriptionTier.PROFESSIONAL

    def test_expiry_is_idempotent(self, service, record, metrics):
        service.handle_payment_failed(record, "in_001", NOW, NOW)
        service.expire_if_due(record, NOW + timedelta(days=8))

        assert service.expire_if_due(record, NOW + timedelta(days=9)) is False
        metrics.record_grace_expired.assert_called_once()


@pytest.mark.asyncio
class TestSweep:
    """Periodic sweep over persisted records."""

    async def _grace_record(self, subscription_factory, ends_at, **fields):
        return await subscription_factory(
            tier=fields.pop("tier", SubscriptionTier.PROFESSIONAL),
            status=SubscriptionStatus.PAST_DUE,
            grace_period_ends_at=ends_at,
            grace_invoice_id="in_001",
            grace_invoice_created_at=ends_at - timedelta(days=7),
            **fields,
        )

    async def test_sweep_expires_only_due_records(
        self, async_session, billing_config, subscription_factory
    ):
        due = await self._grace_record(subscription_factory, NOW - timedelta(hours=1))
        open_grace = await self._grace_record(subscription_factory, NOW + timedelta(days=2))
        active = await subscription_factory()
        service = DunningService(async_session, billing_config)

        summary = await service.process_expired_grace_periods(NOW)
        await async_session.commit()

        assert summary.checked == 1
        assert summary.expired == 1
        assert summary.errors == 0
        assert summary.failed_accounts == []

        store = SubscriptionStore(async_session)
        swept = await store.get(due.account_id)
        assert swept.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        assert swept.tier == SubscriptionTier.STARTER
        assert (await store.get(open_grace.account_id)).status == SubscriptionStatus.PAST_DUE
        assert (await store.get(active.account_id)).status == SubscriptionStatus.ACTIVE

    async def test_sweep_counts_record_failures_and_continues(
        self, async_session, billing_config, subscription_factory
    ):
        failing = await self._grace_record(subscription_factory, NOW - timedelta(days=1))
        healthy = await self._grace_record(subscription_factory, NOW - timedelta(hours=1))
        service = DunningService(async_session, billing_config)
        original = service.expire_if_due

        def flaky(record, now=None):
            if record.account_id == failing.account_id:
                raise RuntimeError("lock timeout")
            return original(record, now)

        with patch.object(service, "expire_if_due", side_effect=flaky):
            summary = await service.process_expired_grace_periods(NOW)
        await async_session.commit()

        assert summary.checked == 2
        assert summary.expired == 1
        assert summary.errors == 1
        assert summary.failed_accounts == [failing.account_id]

        store = SubscriptionStore(async_session)
        assert (await store.get(healthy.account_id)).status == (
            SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        )

    async def test_sweep_with_nothing_due(self, async_session, billing_config):
        summary = await DunningService(async_session, billing_config).process_expired_grace_periods(
            NOW
        )

        assert summary.checked == 0
        assert summary.expired == 0
        assert summary.timestamp == NOW

    async def test_expire_account_if_due(
        self, async_session, billing_config, subscription_factory
    ):
        due = await self._grace_record(subscription_factory, NOW - timedelta(minutes=5))
        service = DunningService(async_session, billing_config)

        record = await service.expire_account_if_due(due.account_id, NOW)

        assert record.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        assert await service.expire_account_if_due("missing-account", NOW) is None
