"""
Subscription record model.

One row per account holding tier, status, provider linkage and the dunning
fields. Rows are never deleted.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Index, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from rankpilot.platform.billing.tiers import SubscriptionTier
from rankpilot.platform.db import Base, TimestampMixin, UTCDateTime


class SubscriptionStatus(str, Enum):
    """Internal subscription statuses. Raw provider strings are never stored."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    CANCELED_FOR_NONPAYMENT = "canceled_for_nonpayment"


CANCELED_STATUSES = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.CANCELED_FOR_NONPAYMENT}
)


def _enum_column(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class SubscriptionRecord(TimestampMixin, Base):
    """Authoritative subscription state of an account."""

    __tablename__ = "account_subscriptions"

    account_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tier: Mapped[SubscriptionTier] = mapped_column(
        _enum_column(SubscriptionTier, "subscription_tier"),
        nullable=False,
        default=SubscriptionTier.STARTER,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )

    # Provider linkage
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Dunning
    grace_period_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    grace_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    grace_invoice_created_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    payment_failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_account_subscriptions_external_subscription_id", "external_subscription_id"),
        Index("ix_account_subscriptions_external_customer_id", "external_customer_id"),
        Index("ix_account_subscriptions_status_grace", "status", "grace_period_ends_at"),
    )

    @classmethod
    def new(
        cls,
        account_id: str,
        tier: SubscriptionTier = SubscriptionTier.STARTER,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    ) -> "SubscriptionRecord":
        """Build a record with every column populated, whether or not it is persisted."""
        return cls(
            account_id=account_id,
            tier=tier,
            status=status,
            external_subscription_id=None,
            external_customer_id=None,
            cancel_at_period_end=False,
            grace_period_ends_at=None,
            grace_invoice_id=None,
            grace_invoice_created_at=None,
            payment_failed_at=None,
            canceled_at=None,
            last_event_at=None,
        )

    @property
    def is_canceled(self) -> bool:
        return self.status in CANCELED_STATUSES

    @property
    def in_grace_period(self) -> bool:
        return self.status == SubscriptionStatus.PAST_DUE and self.grace_period_ends_at is not None

    def grace_expired(self, now: datetime) -> bool:
        return self.in_grace_period and self.grace_period_ends_at <= now  # type: ignore[operator]

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(account_id={self.account_id}, tier={self.tier}, "
            f"status={self.status})>"
        )
