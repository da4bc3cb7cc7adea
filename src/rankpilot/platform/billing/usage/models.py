"""
Usage record model and quota arithmetic results.
"""

from datetime import date, datetime
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Date, Index, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from rankpilot.platform.billing.tiers import ResourceKind
from rankpilot.platform.db import Base, UTCDateTime, utcnow


class UsageRecord(Base):
    """One row per resource-consuming action. Append-only."""

    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    resource_kind: Mapped[ResourceKind] = mapped_column(
        SQLEnum(
            ResourceKind,
            name="usage_resource_kind",
            native_enum=False,
            length=32,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        Index("ix_usage_records_account_kind_created", "account_id", "resource_kind", "created_at"),
    )


class QuotaUsage(BaseModel):
    """Limit, usage and derived figures for one resource kind.

    ``limit``, ``remaining``, ``percentage`` and ``near_limit`` are all None for
    unlimited tiers.
    """

    model_config = ConfigDict(frozen=True)

    limit: int | None = Field(None, description="Monthly limit, None when unlimited")
    used: int = Field(0, ge=0)
    remaining: int | None = None
    percentage: int | None = Field(None, ge=0, le=100)
    near_limit: bool | None = Field(
        None, description="Usage has reached the warning threshold of the limit"
    )

    @property
    def unlimited(self) -> bool:
        return self.limit is None

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.used >= self.limit
