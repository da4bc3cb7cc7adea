"""
Dunning models.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class GraceOutcome(str, Enum):
    """Result of applying a failed payment to a subscription record."""

    STARTED = "started"
    EXTENDED = "extended"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"


class SweepSummary(BaseModel):
    """Result of one grace-period sweep."""

    checked: int = 0
    expired: int = 0
    errors: int = 0
    timestamp: datetime
    failed_accounts: list[str] = Field(default_factory=list)
