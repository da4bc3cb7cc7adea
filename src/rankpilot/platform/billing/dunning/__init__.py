"""
Dunning controller: grace periods after failed payments and their expiry.
"""

from rankpilot.platform.billing.dunning.models import GraceOutcome, SweepSummary
from rankpilot.platform.billing.dunning.service import DunningService

__all__ = ["DunningService", "GraceOutcome", "SweepSummary"]
