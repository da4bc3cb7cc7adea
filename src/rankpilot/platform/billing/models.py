"""
Billing database tables.

Importing this module registers every billing table on ``Base.metadata``.
"""

from rankpilot.platform.billing.subscriptions.models import SubscriptionRecord
from rankpilot.platform.billing.usage.models import UsageRecord
from rankpilot.platform.billing.webhooks.models import ProcessedWebhookEvent

__all__ = ["ProcessedWebhookEvent", "SubscriptionRecord", "UsageRecord"]
