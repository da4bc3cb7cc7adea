"""Tests for the subscription read service and state store."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from rankpilot.platform.billing.config import DunningConfig, ExpiryPolicy
from rankpilot.platform.billing.dunning import DunningService
from rankpilot.platform.billing.subscriptions.models import SubscriptionRecord, SubscriptionStatus
from rankpilot.platform.billing.subscriptions.service import SubscriptionService
from rankpilot.platform.billing.subscriptions.store import SubscriptionStore
from rankpilot.platform.billing.tiers import SubscriptionTier

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


class TestCurrent:
    async def test_missing_record_defaults_without_insert(
        self, async_session, billing_config, account_id
    ):
        service = SubscriptionService(async_session, billing_config)

        record = await service.current(account_id, NOW)
        await async_session.commit()

        assert record.tier == SubscriptionTier.STARTER
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.grace_period_ends_at is None
        count = await async_session.scalar(select(func.count()).select_from(SubscriptionRecord))
        assert count == 0

    async def test_lazy_expiry_is_persisted(
        self, async_session, session_maker, billing_config, subscription_factory, account_id
    ):
        await subscription_factory(
            account_id,
            tier=SubscriptionTier.AGENCY,
            status=SubscriptionStatus.PAST_DUE,
            grace_period_ends_at=NOW - timedelta(days=1),
            grace_invoice_id="in_009",
        )
        service = SubscriptionService(async_session, billing_config)

        record = await service.current(account_id, NOW)
        await async_session.commit()

        assert record.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        async with session_maker() as other:
            stored = await SubscriptionStore(other).get(account_id)
        assert stored.status == SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        assert stored.tier == SubscriptionTier.STARTER
        assert stored.grace_invoice_id is None

    async def test_expiry_rechecks_row_under_lock(
        self, async_session, session_maker, billing_config, subscription_factory, account_id
    ):
        await subscription_factory(
            account_id,
            tier=SubscriptionTier.AGENCY,
            status=SubscriptionStatus.PAST_DUE,
            grace_period_ends_at=NOW - timedelta(hours=1),
            grace_invoice_id="in_001",
        )
        loaded = await SubscriptionStore(async_session).get(account_id)
        assert loaded.status == SubscriptionStatus.PAST_DUE

        # A payment lands in another transaction after this session loaded the row
        async with session_maker() as other:
            paid = await SubscriptionStore(other).get(account_id, for_update=True)
            DunningService(other, billing_config).handle_payment_succeeded(
                paid, NOW - timedelta(hours=2)
            )
            await other.commit()

        record = await SubscriptionService(async_session, billing_config).current(account_id, NOW)
        await async_session.commit()

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.tier == SubscriptionTier.AGENCY
        async with session_maker() as fresh:
            stored = await SubscriptionStore(fresh).get(account_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.grace_period_ends_at is None


class TestResponses:
    async def test_subscription_for(self, async_session, billing_config, subscription_factory):
        record = await subscription_factory(
            tier=SubscriptionTier.PROFESSIONAL,
            status=SubscriptionStatus.PAST_DUE,
            external_customer_id="cus_777",
            grace_period_ends_at=NOW + timedelta(days=2),
        )
        service = SubscriptionService(async_session, billing_config)

        response = await service.subscription_for(record.account_id, NOW)

        assert response.tier == SubscriptionTier.PROFESSIONAL
        assert response.status == SubscriptionStatus.PAST_DUE
        assert response.external_customer_id == "cus_777"
        assert response.in_grace_period is True
        assert response.grace_period_ends_at == NOW + timedelta(days=2)
        assert response.created_at is not None

    async def test_features_for_tier(self, async_session, billing_config, subscription_factory):
        record = await subscription_factory(tier=SubscriptionTier.PROFESSIONAL)
        service = SubscriptionService(async_session, billing_config)

        response = await service.features_for(record.account_id, NOW)

        assert "api_access" in response.features
        assert "team_collaboration" not in response.features
        assert response.features == sorted(response.features)

    async def test_feature_access_denied_points_to_upgrade(
        self, async_session, billing_config, account_id
    ):
        service = SubscriptionService(async_session, billing_config)

        response = await service.feature_access(account_id, "white_label_reports", NOW)

        assert response.has_access is False
        assert response.tier == SubscriptionTier.STARTER
        assert response.upgrade_url == "/pricing"

    async def test_suspended_account_has_no_features(
        self, async_session, make_billing_config, subscription_factory
    ):
        config = make_billing_config(dunning=DunningConfig(expiry_policy=ExpiryPolicy.SUSPEND))
        record = await subscription_factory(
            tier=SubscriptionTier.AGENCY, status=SubscriptionStatus.CANCELED_FOR_NONPAYMENT
        )
        service = SubscriptionService(async_session, config)

        features = await service.features_for(record.account_id, NOW)
        access = await service.feature_access(record.account_id, "basic_audits", NOW)

        assert features.features == []
        assert access.has_access is False

    async def test_list_tiers(self, async_session, billing_config):
        tiers = SubscriptionService(async_session, billing_config).list_tiers()

        assert [t.tier for t in tiers] == list(SubscriptionTier)
        assert tiers[2].limits == {"audit": None, "keyword_search": None}


class TestSummary:
    async def test_counts_by_status_tier_and_grace(
        self, async_session, billing_config, subscription_factory
    ):
        await subscription_factory(tier=SubscriptionTier.STARTER)
        await subscription_factory(tier=SubscriptionTier.AGENCY)
        await subscription_factory(
            tier=SubscriptionTier.PROFESSIONAL,
            status=SubscriptionStatus.PAST_DUE,
            grace_period_ends_at=NOW + timedelta(days=1),
        )
        await subscription_factory(
            tier=SubscriptionTier.PROFESSIONAL,
            status=SubscriptionStatus.PAST_DUE,
            grace_period_ends_at=NOW - timedelta(days=1),
        )

        summary = await SubscriptionService(async_session, billing_config).summary(NOW)

        assert summary.total == 4
        assert summary.by_status["active"] == 2
        assert summary.by_status["past_due"] == 2
        assert summary.by_status["canceled"] == 0
        assert summary.by_tier == {"starter": 1, "professional": 2, "agency": 1}
        assert summary.in_grace_period == 1
        assert summary.expired_grace_period == 1


class TestStore:
    async def test_lookup_by_external_ids(self, async_session, subscription_factory):
        record = await subscription_factory(
            external_subscription_id="sub_abc", external_customer_id="cus_abc"
        )
        store = SubscriptionStore(async_session)

        assert (await store.get_by_external_subscription_id("sub_abc")).account_id == (
            record.account_id
        )
        assert (await store.get_by_external_customer_id("cus_abc")).account_id == (
            record.account_id
        )
        assert await store.get_by_external_subscription_id("sub_missing") is None

    async def test_list_due_for_expiry_orders_by_grace_end(
        self, async_session, subscription_factory
    ):
        later = await subscription_factory(
            status=SubscriptionStatus.PAST_DUE, grace_period_ends_at=NOW - timedelta(hours=1)
        )
        earlier = await subscription_factory(
            status=SubscriptionStatus.PAST_DUE, grace_period_ends_at=NOW - timedelta(days=2)
        )
        await subscription_factory(
            status=SubscriptionStatus.PAST_DUE, grace_period_ends_at=NOW + timedelta(days=2)
        )

        due = await SubscriptionStore(async_session).list_due_for_expiry(NOW)

        assert due == [earlier.account_id, later.account_id]
