"""
Quota ledger: usage records and quota arithmetic.
"""

from rankpilot.platform.billing.usage.ledger import QuotaLedger
from rankpilot.platform.billing.usage.models import QuotaUsage, UsageRecord

__all__ = ["QuotaLedger", "QuotaUsage", "UsageRecord"]
