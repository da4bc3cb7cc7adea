"""
Billing system exceptions.

Custom exceptions for subscription, quota and webhook operations with clear error messages.
Provides comprehensive error handling with status codes, context, and recovery hints.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )


class QuotaConfigurationError(BillingConfigurationError):
    """A finite quota limit that is zero or negative."""

    def __init__(self, message: str, limit: int, tier: str | None = None) -> None:
        super().__init__(
            message,
            config_key=f"tier_limits.{tier}" if tier else "tier_limits",
            recovery_hint="Quota limits must be positive integers or -1 for unlimited",
        )
        self.context["limit"] = limit
        self.error_code = "QUOTA_CONFIG_ERROR"


# ============================================================================
# Subscription errors
# ============================================================================


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionSuspendedError(SubscriptionError):
    """Access suspended after the grace period expired without payment."""

    def __init__(self, message: str, account_id: str, tier: str) -> None:
        super().__init__(
            message,
            context={"account_id": account_id, "tier": tier},
            recovery_hint="Update your payment method to restore access",
        )
        self.error_code = "SUBSCRIPTION_SUSPENDED"
        self.status_code = 403


class FeatureNotAvailableError(SubscriptionError):
    """The account's tier does not include a feature."""

    def __init__(self, message: str, feature: str, tier: str) -> None:
        super().__init__(
            message,
            context={"feature": feature, "tier": tier, "upgrade_url": "/pricing"},
            recovery_hint="Upgrade your plan to unlock this feature",
        )
        self.error_code = "FEATURE_NOT_AVAILABLE"
        self.status_code = 403


class InsufficientTierError(SubscriptionError):
    """The account's tier ranks below the required tier."""

    def __init__(self, message: str, required_tier: str, tier: str) -> None:
        super().__init__(
            message,
            context={"required_tier": required_tier, "tier": tier, "upgrade_url": "/pricing"},
            recovery_hint=f"Upgrade to the {required_tier} plan or higher",
        )
        self.error_code = "INSUFFICIENT_TIER"
        self.status_code = 403


# ============================================================================
# Quota errors
# ============================================================================


class UsageTrackingError(BillingError):
    """Usage tracking errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "USAGE_TRACKING_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class UnknownResourceKindError(UsageTrackingError):
    """A resource kind outside the metered set."""

    def __init__(self, message: str, resource_kind: str) -> None:
        super().__init__(
            message,
            context={"resource_kind": resource_kind},
            recovery_hint="Use one of the metered resource kinds: audit, keyword_search",
        )
        self.error_code = "UNKNOWN_RESOURCE_KIND"


class QuotaExceededError(UsageTrackingError):
    """Monthly quota exhausted for the account's tier."""

    def __init__(
        self, message: str, tier: str, resource_kind: str, limit: int, used: int
    ) -> None:
        super().__init__(
            message,
            context={
                "tier": tier,
                "resource_kind": resource_kind,
                "limit": limit,
                "used": used,
                "remaining": 0,
                "upgrade_url": "/pricing",
            },
            recovery_hint="Upgrade your plan for a higher monthly quota",
        )
        self.error_code = "QUOTA_EXCEEDED"
        self.status_code = 429


# ============================================================================
# Webhook / provider errors
# ============================================================================


class WebhookError(BillingError):
    """Webhook processing errors."""

    def __init__(
        self, message: str, webhook_type: str | None = None, provider: str | None = None
    ) -> None:
        context = {}
        if webhook_type:
            context["webhook_type"] = webhook_type
        if provider:
            context["provider"] = provider

        super().__init__(
            message,
            "WEBHOOK_ERROR",
            status_code=400,
            context=context,
            recovery_hint="Check webhook configuration and retry the webhook delivery",
        )


class WebhookSignatureError(WebhookError):
    """Signature missing, malformed, expired or not matching the signing secret."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message, provider=provider)
        self.error_code = "WEBHOOK_SIGNATURE_INVALID"


class WebhookPayloadError(WebhookError):
    """Signed payload that is not a well-formed event."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message, provider=provider)
        self.error_code = "WEBHOOK_PAYLOAD_INVALID"


class UnresolvableAccountError(WebhookError):
    """An event references provider ids with no matching local account."""

    def __init__(
        self,
        message: str,
        webhook_type: str | None = None,
        external_subscription_id: str | None = None,
        external_customer_id: str | None = None,
    ) -> None:
        super().__init__(message, webhook_type=webhook_type, provider="stripe")
        if external_subscription_id:
            self.context["external_subscription_id"] = external_subscription_id
        if external_customer_id:
            self.context["external_customer_id"] = external_customer_id
        self.error_code = "UNRESOLVABLE_ACCOUNT"
        self.status_code = 500
        self.recovery_hint = "Reconcile the provider customer with a local account manually"


class ProviderUnavailableError(BillingError):
    """The billing provider could not be reached or answered with an error."""

    def __init__(self, message: str, operation: str, provider: str = "stripe") -> None:
        super().__init__(
            message,
            "PROVIDER_UNAVAILABLE",
            status_code=503,
            context={"operation": operation, "provider": provider},
            recovery_hint="Retry later; local state is used until the provider recovers",
        )
