"""Webhook subscription and delivery models.

A subscription registers interest in one event type at one target URL.
Each published event produces one delivery row per active subscription;
delivery rows are mutated only by the webhook.deliver job handler.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Enum, ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from hookrelay.db.models.base import (
    Base,
    DeliveryStatus,
    LongString,
    OptionalTimestampTZ,
    ShortString,
    TimestampTZ,
    UUIDPrimaryKey,
)


class WebhookSubscription(Base):
    """Registered interest in an event type.

    failure_count counts consecutive terminal delivery failures and is reset
    on any successful delivery. Once it reaches the auto-disable threshold
    the subscription is deactivated until an operator re-enables it or
    rotates its secret.
    """

    __tablename__ = "webhook_subscriptions"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    event_type: Mapped[ShortString]
    target_url: Mapped[LongString]
    # HMAC-SHA256 signing secret
    secret: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    failure_count: Mapped[int] = mapped_column(default=0, nullable=False)
    last_success_at: Mapped[OptionalTimestampTZ]
    last_failure_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_webhook_subscriptions_event_active", "event_type", "is_active"),
    )


class WebhookDelivery(Base):
    """One notification of one event to one subscription, across its retries.

    status=delivered is terminal. status=failed with next_retry_at set means
    a retry job is queued; without next_retry_at the delivery is terminal.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[ShortString]

    # Event envelope, or {"truncated": true, "preview": ...} when oversized
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)

    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, name="delivery_status", create_constraint=True),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )
    response_code: Mapped[int | None] = mapped_column(nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(default=0, nullable=False)
    next_retry_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index("ix_webhook_deliveries_subscription_id", "subscription_id"),
        Index("ix_webhook_deliveries_event_type", "event_type"),
        Index("ix_webhook_deliveries_status", "status"),
    )
