"""Persistence for webhook subscriptions and deliveries.

WebhookStore is the collaborator the delivery subsystem talks to; the
SQLAlchemy implementation below is used in production. Every method runs
in its own session and returns detached ORM instances, so callers hold no
session across awaits.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import delete, select, update

from hookrelay.db.models.base import DeliveryStatus
from hookrelay.db.models.webhooks import WebhookDelivery, WebhookSubscription

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100


class WebhookStore(Protocol):
    """CRUD contract for subscriptions and deliveries."""

    async def create_subscription(
        self, event_type: str, target_url: str, secret: str
    ) -> WebhookSubscription: ...

    async def get_subscription(self, subscription_id: uuid.UUID) -> WebhookSubscription | None: ...

    async def list_subscriptions(
        self, event_type: str | None = None, is_active: bool | None = None
    ) -> list[WebhookSubscription]: ...

    async def update_subscription(
        self, subscription_id: uuid.UUID, **fields: Any
    ) -> WebhookSubscription | None: ...

    async def increment_failure_count(
        self, subscription_id: uuid.UUID, failed_at: datetime
    ) -> WebhookSubscription | None: ...

    async def deactivate_subscription(self, subscription_id: uuid.UUID) -> bool: ...

    async def delete_subscription(self, subscription_id: uuid.UUID) -> bool: ...

    async def create_delivery(
        self, subscription_id: uuid.UUID, event_type: str, payload: dict[str, Any]
    ) -> WebhookDelivery: ...

    async def get_delivery(self, delivery_id: uuid.UUID) -> WebhookDelivery | None: ...

    async def update_delivery(
        self, delivery_id: uuid.UUID, expected_attempt_count: int | None = None, **fields: Any
    ) -> bool: ...

    async def list_deliveries(
        self,
        subscription_id: uuid.UUID | None = None,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[WebhookDelivery]: ...

    async def purge_failed_deliveries(self, older_than: timedelta) -> int: ...


class SqlWebhookStore:
    """WebhookStore backed by PostgreSQL.

    Attributes:
        session_factory: Factory for short-lived async sessions.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def create_subscription(
        self, event_type: str, target_url: str, secret: str
    ) -> WebhookSubscription:
        """Insert an active subscription."""
        now = datetime.now(UTC)
        subscription = WebhookSubscription(
            event_type=event_type,
            target_url=target_url,
            secret=secret,
            is_active=True,
            failure_count=0,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(subscription)
            await session.commit()
        return subscription

    async def get_subscription(self, subscription_id: uuid.UUID) -> WebhookSubscription | None:
        """Fetch a subscription by id."""
        async with self.session_factory() as session:
            return await session.get(WebhookSubscription, subscription_id)

    async def list_subscriptions(
        self, event_type: str | None = None, is_active: bool | None = None
    ) -> list[WebhookSubscription]:
        """List subscriptions, optionally filtered by event type and activity."""
        stmt = select(WebhookSubscription).order_by(WebhookSubscription.created_at)
        if event_type is not None:
            stmt = stmt.where(WebhookSubscription.event_type == event_type)
        if is_active is not None:
            stmt = stmt.where(WebhookSubscription.is_active.is_(is_active))

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_subscription(
        self, subscription_id: uuid.UUID, **fields: Any
    ) -> WebhookSubscription | None:
        """Apply field updates and return the updated subscription."""
        stmt = (
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .values(**fields, updated_at=datetime.now(UTC))
            .returning(WebhookSubscription)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            subscription = result.scalars().first()
            await session.commit()
        return subscription

    async def increment_failure_count(
        self, subscription_id: uuid.UUID, failed_at: datetime
    ) -> WebhookSubscription | None:
        """Add one terminal failure in a single statement.

        Returns:
            The subscription as it is after the increment, or None if it
            no longer exists.
        """
        stmt = (
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .values(
                failure_count=WebhookSubscription.failure_count + 1,
                last_failure_at=failed_at,
                updated_at=failed_at,
            )
            .returning(WebhookSubscription)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            subscription = result.scalars().first()
            await session.commit()
        return subscription

    async def deactivate_subscription(self, subscription_id: uuid.UUID) -> bool:
        """Flip an active subscription to inactive.

        Returns:
            True only for the caller whose update changed the row.
        """
        stmt = (
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id, WebhookSubscription.is_active.is_(True))
            .values(is_active=False, updated_at=datetime.now(UTC))
            .returning(WebhookSubscription.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            changed = result.scalar_one_or_none() is not None
            await session.commit()
        return changed

    async def delete_subscription(self, subscription_id: uuid.UUID) -> bool:
        """Delete a subscription and, by cascade, its deliveries."""
        stmt = (
            delete(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .returning(WebhookSubscription.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            deleted = result.scalar_one_or_none() is not None
            await session.commit()
        return deleted

    async def create_delivery(
        self, subscription_id: uuid.UUID, event_type: str, payload: dict[str, Any]
    ) -> WebhookDelivery:
        """Insert a pending delivery row."""
        now = datetime.now(UTC)
        delivery = WebhookDelivery(
            subscription_id=subscription_id,
            event_type=event_type,
            payload=payload,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(delivery)
            await session.commit()
        return delivery

    async def get_delivery(self, delivery_id: uuid.UUID) -> WebhookDelivery | None:
        """Fetch a delivery by id."""
        async with self.session_factory() as session:
            return await session.get(WebhookDelivery, delivery_id)

    async def update_delivery(
        self, delivery_id: uuid.UUID, expected_attempt_count: int | None = None, **fields: Any
    ) -> bool:
        """Apply field updates to a delivery.

        Args:
            delivery_id: Delivery to update.
            expected_attempt_count: When given, the update only applies if
                the stored attempt_count still has this value.
            **fields: Column values to set.

        Returns:
            True if a row was updated.
        """
        stmt = (
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(**fields, updated_at=datetime.now(UTC))
            .returning(WebhookDelivery.id)
        )
        if expected_attempt_count is not None:
            stmt = stmt.where(WebhookDelivery.attempt_count == expected_attempt_count)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            updated = result.scalar_one_or_none() is not None
            await session.commit()
        return updated

    async def list_deliveries(
        self,
        subscription_id: uuid.UUID | None = None,
        status: DeliveryStatus | None = None,
        event_type: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[WebhookDelivery]:
        """List deliveries, newest first."""
        stmt = select(WebhookDelivery).order_by(WebhookDelivery.created_at.desc()).limit(limit)
        if subscription_id is not None:
            stmt = stmt.where(WebhookDelivery.subscription_id == subscription_id)
        if status is not None:
            stmt = stmt.where(WebhookDelivery.status == status)
        if event_type is not None:
            stmt = stmt.where(WebhookDelivery.event_type == event_type)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def purge_failed_deliveries(self, older_than: timedelta) -> int:
        """Delete terminally failed deliveries not updated within older_than.

        Deliveries with a pending retry (next_retry_at set) are kept.

        Returns:
            Number of deliveries deleted.
        """
        cutoff = datetime.now(UTC) - older_than
        stmt = (
            delete(WebhookDelivery)
            .where(
                WebhookDelivery.status == DeliveryStatus.FAILED,
                WebhookDelivery.next_retry_at.is_(None),
                WebhookDelivery.updated_at < cutoff,
            )
            .returning(WebhookDelivery.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            deleted = len(list(result.scalars().all()))
            await session.commit()

        if deleted:
            logger.info("Purged failed webhook deliveries: deleted=%d, cutoff=%s", deleted, cutoff.isoformat())
        return deleted
