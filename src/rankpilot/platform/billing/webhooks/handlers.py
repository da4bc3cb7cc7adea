"""
Stripe webhook reconciler.

Verifies provider events, deduplicates them by event id and applies
idempotent transitions to subscription records. Each event is one
transaction: at most one subscription record write plus the processed-event
log row, committed together.
"""

import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rankpilot.platform.billing.config import BillingConfig, get_billing_config
from rankpilot.platform.billing.dunning.models import GraceOutcome
from rankpilot.platform.billing.dunning.service import DunningService
from rankpilot.platform.billing.exceptions import (
    ProviderUnavailableError,
    UnresolvableAccountError,
    WebhookPayloadError,
)
from rankpilot.platform.billing.metrics import BillingMetrics, get_billing_metrics
from rankpilot.platform.billing.subscriptions.models import (
    SubscriptionRecord,
    SubscriptionStatus,
)
from rankpilot.platform.billing.subscriptions.store import SubscriptionStore
from rankpilot.platform.billing.tiers import SubscriptionTier
from rankpilot.platform.billing.webhooks.models import (
    BillingEvent,
    BillingEventType,
    ProcessedWebhookEvent,
    ResolutionKind,
    WebhookOutcome,
    extract_account_id,
    timestamp_to_datetime,
)
from rankpilot.platform.billing.webhooks.provider import StripeClient, verify_stripe_signature
from rankpilot.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)

# Provider statuses applied to the record. "canceled" and "incomplete_expired"
# are absent: only a deletion event cancels a subscription.
PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
}


class WebhookResult:
    """Outcome of dispatching one event."""

    __slots__ = ("status", "account_id", "detail")

    def __init__(
        self,
        status: WebhookOutcome,
        account_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.status = status
        self.account_id = account_id
        self.detail = detail


def _as_id(value: Any) -> str | None:
    """Stripe references are ids or expanded objects."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        return _as_id(value.get("id"))
    return None


def _first_price_id(container: Any) -> str | None:
    """Price id of the first line in a ``{"data": [...]}`` list."""
    if not isinstance(container, dict):
        return None
    items = container.get("data")
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        return None
    return _as_id(items[0].get("price"))


def subscription_price_id(subscription: dict[str, Any]) -> str | None:
    return _first_price_id(subscription.get("items"))


def invoice_price_id(invoice: dict[str, Any]) -> str | None:
    return _first_price_id(invoice.get("lines"))


def _subscription_details(invoice: dict[str, Any]) -> dict[str, Any]:
    details = invoice.get("subscription_details")
    if not isinstance(details, dict):
        parent = invoice.get("parent")
        details = parent.get("subscription_details") if isinstance(parent, dict) else None
    return details if isinstance(details, dict) else {}


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    return _as_id(invoice.get("subscription")) or _as_id(
        _subscription_details(invoice).get("subscription")
    )


class StripeWebhookHandler:
    """Reconciles Stripe lifecycle events with subscription records."""

    provider = "stripe"

    def __init__(
        self,
        db: AsyncSession,
        config: BillingConfig | None = None,
        client: StripeClient | None = None,
        metrics: BillingMetrics | None = None,
    ) -> None:
        self.db = db
        self.config = config or get_billing_config()
        self.client = client or StripeClient(self.config.stripe)
        self.metrics = metrics or get_billing_metrics()
        self.store = SubscriptionStore(db)
        self.dunning = DunningService(db, self.config, self.metrics)

        self._handlers: dict[
            BillingEventType, Callable[[BillingEvent, datetime], Awaitable[WebhookResult]]
        ] = {
            BillingEventType.SUBSCRIPTION_CREATED: self._handle_subscription_upsert,
            BillingEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_upsert,
            BillingEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            BillingEventType.SUBSCRIPTION_TRIAL_WILL_END: self._handle_trial_will_end,
            BillingEventType.PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            BillingEventType.PAYMENT_FAILED: self._handle_payment_failed,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def verify_signature(
        self, payload: bytes, signature: str | None, now: datetime | None = None
    ) -> None:
        verify_stripe_signature(
            payload,
            signature,
            self.config.stripe.webhook_secret,
            tolerance_seconds=self.config.stripe.webhook_tolerance_seconds,
            now=now.timestamp() if now else None,
        )

    async def handle_webhook(
        self,
        payload: bytes,
        signature: str | None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Verify, deduplicate and apply one webhook delivery.

        Raises:
            WebhookSignatureError: signature check failed; nothing was changed
            WebhookPayloadError: signed body is not a usable event
        """
        started = time.perf_counter()
        now = now or datetime.now(UTC)

        self.verify_signature(payload, signature, now)
        event = BillingEvent.from_payload(payload)
        self.metrics.record_webhook_received(self.provider, event.type)

        if await self.db.get(ProcessedWebhookEvent, event.id) is not None:
            logger.info("billing.webhook.duplicate", event_id=event.id, event_type=event.type)
            return self._response(event, WebhookResult(WebhookOutcome.DUPLICATE))

        try:
            result = await self.process_event(event, now)
        except Exception as e:
            await self.db.rollback()
            self.metrics.record_webhook_processed(
                self.provider, event.type, False, (time.perf_counter() - started) * 1000
            )
            logger.error(
                "billing.webhook.processing_failed",
                event_id=event.id,
                event_type=event.type,
                error=str(e),
            )
            raise

        self.db.add(
            ProcessedWebhookEvent(
                event_id=event.id,
                event_type=event.type,
                account_id=result.account_id,
                outcome=result.status,
                detail=result.detail,
                event_created_at=event.created,
                received_at=now,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # Same event id committed by a concurrent delivery
            await self.db.rollback()
            logger.info(
                "billing.webhook.duplicate_concurrent", event_id=event.id, event_type=event.type
            )
            return self._response(event, WebhookResult(WebhookOutcome.DUPLICATE))

        self.metrics.record_webhook_processed(
            self.provider, event.type, True, (time.perf_counter() - started) * 1000
        )
        logger.info(
            "billing.webhook.processed",
            event_id=event.id,
            event_type=event.type,
            outcome=result.status.value,
            account_id=result.account_id,
        )
        return self._response(event, result)

    async def process_event(self, event: BillingEvent, now: datetime) -> WebhookResult:
        """Dispatch an event to its handler. Does not commit."""
        event_type = event.event_type
        if event_type is None:
            logger.info("billing.webhook.unhandled_event", event_id=event.id, event_type=event.type)
            return WebhookResult(WebhookOutcome.IGNORED, detail=f"Unhandled event type: {event.type}")

        handler = self._handlers[event_type]
        try:
            return await handler(event, now)
        except UnresolvableAccountError as e:
            logger.error(
                "billing.webhook.unresolved_account",
                event_id=event.id,
                event_type=event.type,
                **e.context,
            )
            self.metrics.record_unresolved_account(event.type)
            return WebhookResult(WebhookOutcome.UNRESOLVED, detail=e.message)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _handle_subscription_upsert(
        self, event: BillingEvent, now: datetime
    ) -> WebhookResult:
        subscription = event.data_object
        subscription_id = _as_id(subscription.get("id"))
        customer_id = _as_id(subscription.get("customer"))
        account_id = await self._resolve_account(
            event, [subscription.get("metadata")], subscription_id, customer_id
        )

        record, expired = await self._lock_record(account_id, now)
        if record is not None:
            if self._is_stale(record, event):
                return await self._skip(record, expired, self._stale(record, event))
            if record.is_canceled and record.external_subscription_id == subscription_id:
                logger.info(
                    "billing.webhook.canceled_subscription_event_ignored",
                    account_id=account_id,
                    subscription_id=subscription_id,
                    event_type=event.type,
                )
                return await self._skip(
                    record,
                    expired,
                    WebhookResult(
                        WebhookOutcome.IGNORED, account_id, detail="Subscription already canceled"
                    ),
                )

        if record is None:
            record = SubscriptionRecord.new(account_id, tier=self.config.catalog.lowest_tier)
        elif record.is_canceled:
            # A new provider subscription starts a new lifecycle
            record.status = SubscriptionStatus.ACTIVE
            record.canceled_at = None

        previous = (record.tier, record.status)
        record.tier = self._tier_for_price(subscription_price_id(subscription), record, event)
        self._apply_provider_status(record, subscription.get("status"), event, now)
        record.cancel_at_period_end = bool(subscription.get("cancel_at_period_end", False))
        self._link(record, subscription_id, customer_id)
        self._advance_event_clock(record, event)

        await self.store.save(record)
        self._audit_change(record, previous, event)
        return WebhookResult(WebhookOutcome.PROCESSED, account_id)

    async def _handle_subscription_deleted(
        self, event: BillingEvent, now: datetime
    ) -> WebhookResult:
        subscription = event.data_object
        subscription_id = _as_id(subscription.get("id"))
        customer_id = _as_id(subscription.get("customer"))
        account_id = await self._resolve_account(
            event, [subscription.get("metadata")], subscription_id, customer_id
        )

        record, expired = await self._lock_record(account_id, now)
        if record is not None:
            if self._is_stale(record, event):
                return await self._skip(record, expired, self._stale(record, event))
            if (
                record.external_subscription_id
                and subscription_id
                and record.external_subscription_id != subscription_id
            ):
                logger.info(
                    "billing.webhook.superseded_subscription_deleted",
                    account_id=account_id,
                    subscription_id=subscription_id,
                    current_subscription_id=record.external_subscription_id,
                )
                return await self._skip(
                    record,
                    expired,
                    WebhookResult(
                        WebhookOutcome.IGNORED, account_id, detail="Subscription superseded"
                    ),
                )
            if record.is_canceled:
                return await self._skip(
                    record,
                    expired,
                    WebhookResult(
                        WebhookOutcome.IGNORED, account_id, detail="Subscription already canceled"
                    ),
                )
        else:
            record = SubscriptionRecord.new(account_id, tier=self.config.catalog.lowest_tier)

        previous = (record.tier, record.status)
        self.dunning.clear_grace(record)
        record.status = SubscriptionStatus.CANCELED
        record.tier = self.config.catalog.lowest_tier
        record.canceled_at = now
        record.cancel_at_period_end = False
        self._link(record, subscription_id, customer_id)
        self._advance_event_clock(record, event)

        await self.store.save(record)
        self._audit_change(record, previous, event)
        return WebhookResult(WebhookOutcome.PROCESSED, account_id)

    async def _handle_payment_succeeded(
        self, event: BillingEvent, now: datetime
    ) -> WebhookResult:
        invoice = event.data_object
        subscription_id = invoice_subscription_id(invoice)
        customer_id = _as_id(invoice.get("customer"))
        account_id = await self._resolve_account(
            event,
            [_subscription_details(invoice).get("metadata"), invoice.get("metadata")],
            subscription_id,
            customer_id,
        )

        # Fetched before the row lock so admissions never wait on the provider
        canonical = await self._fetch_canonical_subscription(subscription_id)
        record, expired = await self._lock_record(account_id, now)

        if canonical is None:
            # Event data only: ordering is not guaranteed, so stale events are dropped
            if record is not None and self._is_stale(record, event):
                return await self._skip(record, expired, self._stale(record, event))
            provider_status: Any = "active"
            price_id = invoice_price_id(invoice)
        else:
            provider_status = canonical.get("status")
            price_id = subscription_price_id(canonical)

        if record is None:
            record = SubscriptionRecord.new(account_id, tier=self.config.catalog.lowest_tier)
        elif record.is_canceled and (
            subscription_id is None or record.external_subscription_id == subscription_id
        ):
            return await self._skip(
                record,
                expired,
                WebhookResult(
                    WebhookOutcome.IGNORED, account_id, detail="Subscription already canceled"
                ),
            )

        previous = (record.tier, record.status)
        record.tier = self._tier_for_price(price_id, record, event)
        self._apply_provider_status(record, provider_status, event, now)
        if canonical is not None:
            record.cancel_at_period_end = bool(canonical.get("cancel_at_period_end", False))
        self._link(record, subscription_id, customer_id)
        self._advance_event_clock(record, event)

        await self.store.save(record)
        self._audit_change(record, previous, event)
        return WebhookResult(
            WebhookOutcome.PROCESSED,
            account_id,
            detail="canonical" if canonical is not None else "event_payload",
        )

    async def _handle_payment_failed(self, event: BillingEvent, now: datetime) -> WebhookResult:
        invoice = event.data_object
        invoice_id = _as_id(invoice.get("id"))
        if invoice_id is None:
            raise WebhookPayloadError("Invoice event without an invoice id", provider=self.provider)

        subscription_id = invoice_subscription_id(invoice)
        customer_id = _as_id(invoice.get("customer"))
        account_id = await self._resolve_account(
            event,
            [_subscription_details(invoice).get("metadata"), invoice.get("metadata")],
            subscription_id,
            customer_id,
        )

        record, expired = await self._lock_record(account_id, now)
        if record is None:
            record = SubscriptionRecord.new(account_id, tier=self.config.catalog.lowest_tier)
        elif self._is_stale(record, event):
            return await self._skip(record, expired, self._stale(record, event))

        invoice_created = timestamp_to_datetime(invoice.get("created")) or event.created
        outcome = self.dunning.handle_payment_failed(record, invoice_id, invoice_created, now)

        if outcome in (GraceOutcome.STARTED, GraceOutcome.EXTENDED):
            self._link(record, subscription_id, customer_id)
            self._advance_event_clock(record, event)
            await self.store.save(record)
        elif expired:
            await self.store.save(record)

        return WebhookResult(WebhookOutcome.PROCESSED, account_id, detail=f"grace_{outcome.value}")

    async def _handle_trial_will_end(self, event: BillingEvent, now: datetime) -> WebhookResult:
        subscription = event.data_object
        trial_end = timestamp_to_datetime(subscription.get("trial_end"))
        logger.info(
            "billing.webhook.trial_will_end",
            subscription_id=_as_id(subscription.get("id")),
            customer_id=_as_id(subscription.get("customer")),
            trial_end=trial_end.isoformat() if trial_end else None,
        )
        return WebhookResult(WebhookOutcome.ACKNOWLEDGED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_account(
        self,
        event: BillingEvent,
        metadata_sources: list[Any],
        subscription_id: str | None,
        customer_id: str | None,
    ) -> str:
        """
        Resolve the owning account: metadata first, then the local mapping by
        subscription id, then by customer id.

        Raises:
            UnresolvableAccountError: no source yields an account
        """
        for metadata in metadata_sources:
            resolution = extract_account_id(metadata, self.config.account_metadata_key)
            if resolution.kind == ResolutionKind.FOUND and resolution.account_id:
                return resolution.account_id
            if resolution.kind == ResolutionKind.MALFORMED:
                logger.warning(
                    "billing.webhook.malformed_account_metadata",
                    event_id=event.id,
                    event_type=event.type,
                    detail=resolution.detail,
                )

        if subscription_id:
            record = await self.store.get_by_external_subscription_id(subscription_id)
            if record is not None:
                return record.account_id
        if customer_id:
            record = await self.store.get_by_external_customer_id(customer_id)
            if record is not None:
                return record.account_id

        raise UnresolvableAccountError(
            f"No local account for event {event.id}",
            webhook_type=event.type,
            external_subscription_id=subscription_id,
            external_customer_id=customer_id,
        )

    async def _lock_record(
        self, account_id: str, now: datetime
    ) -> tuple[SubscriptionRecord | None, bool]:
        """
        Lock the account's record and apply a grace period that lapsed before
        this event arrived. Returns the record and whether it was expired.
        """
        record = await self.store.get(account_id, for_update=True)
        if record is None:
            return None, False
        return record, self.dunning.expire_if_due(record, now)

    async def _skip(
        self, record: SubscriptionRecord, expired: bool, result: WebhookResult
    ) -> WebhookResult:
        """Leave the event unapplied, persisting an expiry found while locking."""
        if expired:
            await self.store.save(record)
        return result

    async def _fetch_canonical_subscription(
        self, subscription_id: str | None
    ) -> dict[str, Any] | None:
        if not subscription_id:
            return None
        try:
            return await self.client.retrieve_subscription(subscription_id)
        except ProviderUnavailableError as e:
            logger.warning(
                "billing.webhook.provider_refetch_failed",
                subscription_id=subscription_id,
                error=e.message,
            )
            self.metrics.record_provider_fallback("retrieve_subscription")
            return None

    def _tier_for_price(
        self, price_id: str | None, record: SubscriptionRecord, event: BillingEvent
    ) -> SubscriptionTier:
        tier = self.config.tier_for_price(price_id)
        if tier is None:
            logger.warning(
                "billing.webhook.unmapped_price",
                event_id=event.id,
                account_id=record.account_id,
                price_id=price_id,
                kept_tier=record.tier.value,
            )
            return record.tier
        return tier

    def _apply_provider_status(
        self,
        record: SubscriptionRecord,
        provider_status: Any,
        event: BillingEvent,
        now: datetime,
    ) -> None:
        status = PROVIDER_STATUS_MAP.get(provider_status) if isinstance(provider_status, str) else None
        if status is None:
            logger.info(
                "billing.webhook.provider_status_not_applied",
                event_id=event.id,
                account_id=record.account_id,
                provider_status=provider_status,
            )
            return

        if status == SubscriptionStatus.ACTIVE:
            self.dunning.handle_payment_succeeded(record, now)
        elif status == SubscriptionStatus.TRIALING:
            self.dunning.clear_grace(record)
            record.status = SubscriptionStatus.TRIALING
        else:
            record.status = status

    @staticmethod
    def _link(
        record: SubscriptionRecord, subscription_id: str | None, customer_id: str | None
    ) -> None:
        if subscription_id:
            record.external_subscription_id = subscription_id
        if customer_id:
            record.external_customer_id = customer_id

    @staticmethod
    def _is_stale(record: SubscriptionRecord, event: BillingEvent) -> bool:
        return record.last_event_at is not None and event.created < record.last_event_at

    @staticmethod
    def _advance_event_clock(record: SubscriptionRecord, event: BillingEvent) -> None:
        if record.last_event_at is None or event.created > record.last_event_at:
            record.last_event_at = event.created

    def _stale(self, record: SubscriptionRecord, event: BillingEvent) -> WebhookResult:
        logger.info(
            "billing.webhook.stale_event",
            event_id=event.id,
            event_type=event.type,
            account_id=record.account_id,
            event_created=event.created.isoformat(),
            last_event_at=record.last_event_at.isoformat() if record.last_event_at else None,
        )
        return WebhookResult(
            WebhookOutcome.STALE, record.account_id, detail="Older than the last applied event"
        )

    @staticmethod
    def _audit_change(
        record: SubscriptionRecord,
        previous: tuple[SubscriptionTier, SubscriptionStatus],
        event: BillingEvent,
    ) -> None:
        previous_tier, previous_status = previous
        if previous_tier == record.tier and previous_status == record.status:
            return
        log_audit_event(
            "subscription.changed",
            category="billing",
            account_id=record.account_id,
            resource_type="subscription",
            resource_id=record.external_subscription_id,
            event_id=event.id,
            event_type=event.type,
            previous_tier=previous_tier.value,
            new_tier=record.tier.value,
            previous_status=previous_status.value,
            new_status=record.status.value,
        )

    @staticmethod
    def _response(event: BillingEvent, result: WebhookResult) -> dict[str, Any]:
        return {
            "accepted": True,
            "status": result.status.value,
            "event_id": event.id,
            "event_type": event.type,
            "account_id": result.account_id,
        }
