"""
Webhook models.

Typed view of provider events, account-id extraction from subscription
metadata and the processed-event log used for deduplication.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Index, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from rankpilot.platform.billing.exceptions import WebhookPayloadError
from rankpilot.platform.db import Base, UTCDateTime, utcnow


class BillingEventType(str, Enum):
    """Provider events the reconciler acts on."""

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, raw: str) -> "BillingEventType | None":
        """Map a raw event name to a member; ``subscription.*`` is accepted unprefixed."""
        name = f"customer.{raw}" if raw.startswith("subscription.") else raw
        try:
            return cls(name)
        except ValueError:
            return None


class WebhookOutcome(str, Enum):
    """What processing an event amounted to."""

    PROCESSED = "processed"
    ACKNOWLEDGED = "acknowledged"
    IGNORED = "ignored"
    STALE = "stale"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"


class BillingEvent(BaseModel):
    """A verified provider event."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    created: datetime
    data_object: dict[str, Any] = Field(default_factory=dict)
    livemode: bool = False

    @property
    def event_type(self) -> BillingEventType | None:
        return BillingEventType.parse(self.type)

    @classmethod
    def from_payload(cls, payload: bytes | str) -> "BillingEvent":
        """
        Parse a raw webhook body.

        Raises:
            WebhookPayloadError: body is not a JSON object with an id and a type
        """
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WebhookPayloadError(f"Invalid webhook payload: {e}", provider="stripe") from e

        if not isinstance(data, dict):
            raise WebhookPayloadError("Invalid webhook payload: expected an object", provider="stripe")

        event_id = data.get("id")
        event_type = data.get("type")
        if not isinstance(event_id, str) or not event_id:
            raise WebhookPayloadError("Invalid webhook payload: missing event id", provider="stripe")
        if not isinstance(event_type, str) or not event_type:
            raise WebhookPayloadError(
                "Invalid webhook payload: missing event type", provider="stripe"
            )

        data_section = data.get("data")
        data_object = data_section.get("object") if isinstance(data_section, dict) else None
        if not isinstance(data_object, dict):
            data_object = {}

        return cls(
            id=event_id,
            type=event_type,
            created=timestamp_to_datetime(data.get("created")) or datetime.now(UTC),
            data_object=data_object,
            livemode=bool(data.get("livemode", False)),
        )


def timestamp_to_datetime(value: Any) -> datetime | None:
    """Provider epoch seconds to an aware datetime."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return datetime.fromtimestamp(value, tz=UTC)


# ============================================================================
# Account resolution
# ============================================================================


class ResolutionKind(str, Enum):
    FOUND = "found"
    MALFORMED = "malformed"
    ABSENT = "absent"


class AccountResolution(BaseModel):
    """Result of pulling an account id out of provider metadata."""

    model_config = ConfigDict(frozen=True)

    kind: ResolutionKind
    account_id: str | None = None
    detail: str | None = None

    @classmethod
    def found(cls, account_id: str) -> "AccountResolution":
        return cls(kind=ResolutionKind.FOUND, account_id=account_id)

    @classmethod
    def malformed(cls, detail: str) -> "AccountResolution":
        return cls(kind=ResolutionKind.MALFORMED, detail=detail)

    @classmethod
    def absent(cls) -> "AccountResolution":
        return cls(kind=ResolutionKind.ABSENT)


def extract_account_id(metadata: Any, key: str) -> AccountResolution:
    """
    Extract and validate the account id stored under ``key`` in provider metadata.

    Account ids are UUIDs; anything else present under the key is malformed.
    """
    if metadata is None:
        return AccountResolution.absent()
    if not isinstance(metadata, dict):
        return AccountResolution.malformed(f"metadata is {type(metadata).__name__}, not an object")

    value = metadata.get(key)
    if value is None or value == "":
        return AccountResolution.absent()
    if not isinstance(value, str):
        return AccountResolution.malformed(f"{key} is {type(value).__name__}, not a string")

    try:
        return AccountResolution.found(str(UUID(value.strip())))
    except ValueError:
        return AccountResolution.malformed(f"{key} is not a valid account id: {value!r}")


# ============================================================================
# Processed-event log
# ============================================================================


class ProcessedWebhookEvent(Base):
    """
    One row per processed provider event id.

    Rows with outcome ``unresolved`` are the dead-letter list of events whose
    account could not be matched and that need manual reconciliation.
    """

    __tablename__ = "billing_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    outcome: Mapped[WebhookOutcome] = mapped_column(
        SQLEnum(
            WebhookOutcome,
            name="webhook_outcome",
            native_enum=False,
            length=32,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_created_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_billing_webhook_events_outcome", "outcome", "received_at"),)
