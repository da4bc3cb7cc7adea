"""
Billing module metrics and monitoring

Instruments are created on the OpenTelemetry metrics API; without a configured
SDK the global meter provider hands out no-op instruments.
"""

from typing import Any

import structlog
from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram, Meter

logger = structlog.get_logger(__name__)


class BillingMetrics:
    """Billing metrics collector"""

    def __init__(self, meter: Meter | None = None) -> None:
        self.meter = meter or metrics.get_meter("rankpilot.billing")

        # Webhook metrics
        self.webhook_received_counter = self._create_counter(
            name="billing.webhook.received",
            description="Number of webhooks received",
        )
        self.webhook_processed_counter = self._create_counter(
            name="billing.webhook.processed",
            description="Number of webhooks processed successfully",
        )
        self.webhook_failed_counter = self._create_counter(
            name="billing.webhook.failed",
            description="Number of webhook processing failures",
        )
        self.webhook_duration_histogram = self._create_histogram(
            name="billing.webhook.duration",
            description="Webhook processing duration",
            unit="ms",
        )
        self.unresolved_account_counter = self._create_counter(
            name="billing.webhook.unresolved_account",
            description="Events whose owning account could not be resolved",
        )
        self.provider_fallback_counter = self._create_counter(
            name="billing.provider.fallback",
            description="Provider re-fetches that fell back to event data",
        )

        # Dunning metrics
        self.grace_started_counter = self._create_counter(
            name="billing.dunning.grace_started",
            description="Grace periods opened after a failed payment",
        )
        self.grace_extended_counter = self._create_counter(
            name="billing.dunning.grace_extended",
            description="Grace periods restarted for a later invoice",
        )
        self.grace_cleared_counter = self._create_counter(
            name="billing.dunning.grace_cleared",
            description="Grace periods cleared by a successful payment",
        )
        self.grace_expired_counter = self._create_counter(
            name="billing.dunning.grace_expired",
            description="Grace periods that expired without payment",
        )

        # Quota metrics
        self.admission_allowed_counter = self._create_counter(
            name="billing.quota.admission_allowed",
            description="Resource admissions granted",
        )
        self.admission_denied_counter = self._create_counter(
            name="billing.quota.admission_denied",
            description="Resource admissions denied",
        )

    # Webhook metrics
    def record_webhook_received(self, provider: str, event_type: str) -> None:
        """Record webhook receipt"""
        attributes = {"provider": provider, "event_type": event_type}
        self.webhook_received_counter.add(1, attributes)
        logger.debug("billing.metrics.webhook_received", **attributes)

    def record_webhook_processed(
        self,
        provider: str,
        event_type: str,
        success: bool,
        duration_ms: float,
    ) -> None:
        """Record webhook processing result"""
        attributes = {
            "provider": provider,
            "event_type": event_type,
            "success": str(success),
        }

        if success:
            self.webhook_processed_counter.add(1, attributes)
        else:
            self.webhook_failed_counter.add(1, attributes)

        self.webhook_duration_histogram.record(duration_ms, attributes)

    def record_unresolved_account(self, event_type: str) -> None:
        self.unresolved_account_counter.add(1, {"event_type": event_type})

    def record_provider_fallback(self, operation: str) -> None:
        self.provider_fallback_counter.add(1, {"operation": operation})

    # Dunning metrics
    def record_grace_started(self, tier: str) -> None:
        self.grace_started_counter.add(1, {"tier": tier})

    def record_grace_extended(self, tier: str) -> None:
        self.grace_extended_counter.add(1, {"tier": tier})

    def record_grace_cleared(self, tier: str) -> None:
        self.grace_cleared_counter.add(1, {"tier": tier})

    def record_grace_expired(self, tier: str, policy: str) -> None:
        self.grace_expired_counter.add(1, {"tier": tier, "policy": policy})

    # Quota metrics
    def record_admission(self, tier: str, resource_kind: str, allowed: bool, reason: str | None) -> None:
        """Record a quota gate decision"""
        attributes: dict[str, Any] = {"tier": tier, "resource_kind": resource_kind}
        if allowed:
            self.admission_allowed_counter.add(1, attributes)
        else:
            attributes["reason"] = reason or "unknown"
            self.admission_denied_counter.add(1, attributes)

    # Internal helpers -----------------------------------------------------

    def _create_counter(self, name: str, description: str, unit: str = "1") -> Counter:
        return self.meter.create_counter(name=name, description=description, unit=unit)

    def _create_histogram(self, name: str, description: str, unit: str = "1") -> Histogram:
        return self.meter.create_histogram(name=name, description=description, unit=unit)


# Global metrics instance
_billing_metrics: BillingMetrics | None = None


def get_billing_metrics() -> BillingMetrics:
    """Get the global billing metrics instance"""
    global _billing_metrics
    if _billing_metrics is None:
        _billing_metrics = BillingMetrics()
    return _billing_metrics


def set_billing_metrics(metrics_instance: BillingMetrics | None) -> None:
    """Set the global billing metrics instance"""
    global _billing_metrics
    _billing_metrics = metrics_instance
