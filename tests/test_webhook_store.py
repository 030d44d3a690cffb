"""Tests for the PostgreSQL-backed webhook store.

Sessions are mocked; the tests check the rows and statements produced.
"""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from hookrelay.db.models.base import DeliveryStatus
from hookrelay.db.models.webhooks import WebhookDelivery, WebhookSubscription
from hookrelay.services.webhook_store import SqlWebhookStore


def make_session(rows: list | None = None, scalar: object = None) -> MagicMock:
    session = MagicMock()
    session.add = MagicMock()
    session.commit = AsyncMock()
    session.get = AsyncMock(return_value=scalar)
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows or []
    result.scalars.return_value.first.return_value = scalar
    result.scalar_one_or_none.return_value = scalar
    session.execute = AsyncMock(return_value=result)
    return session


def make_factory(session: MagicMock) -> MagicMock:
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    factory.return_value.__aexit__.return_value = False
    return factory


class TestSubscriptions:
    """Tests for subscription persistence."""

    @pytest.mark.asyncio
    async def test_create_subscription(self):
        """Test that new subscriptions start active with no failures."""
        session = make_session()
        store = SqlWebhookStore(make_factory(session))

        subscription = await store.create_subscription("invoice.paid", "https://example.com/hook", "s3cret")

        assert session.add.call_args.args[0] is subscription
        assert subscription.is_active is True
        assert subscription.failure_count == 0
        assert subscription.secret == "s3cret"
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_list_subscriptions_filters(self):
        """Test that event type and activity filters reach the query."""
        session = make_session()
        store = SqlWebhookStore(make_factory(session))

        await store.list_subscriptions(event_type="invoice.paid", is_active=True)

        sql = str(session.execute.await_args.args[0])
        assert "webhook_subscriptions.event_type" in sql
        assert "webhook_subscriptions.is_active" in sql

    @pytest.mark.asyncio
    async def test_update_subscription_returns_row(self):
        """Test that updates return the updated subscription."""
        subscription = WebhookSubscription(event_type="invoice.paid")
        session = make_session(scalar=subscription)
        store = SqlWebhookStore(make_factory(session))

        result = await store.update_subscription(uuid.uuid4(), is_active=False)

        assert result is subscription
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_increment_failure_count_is_a_single_update(self):
        """Test that the counter is incremented in SQL rather than read and rewritten."""
        subscription = WebhookSubscription(event_type="invoice.paid", failure_count=3, is_active=True)
        session = make_session(scalar=subscription)
        store = SqlWebhookStore(make_factory(session))

        result = await store.increment_failure_count(uuid.uuid4(), datetime.now(UTC))

        assert result is subscription
        sql = str(session.execute.await_args.args[0])
        assert "webhook_subscriptions.failure_count +" in sql
        assert "RETURNING" in sql
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_deactivate_only_active_subscription(self):
        """Test that deactivation is conditional and reports whether it changed the row."""
        session = make_session(scalar=uuid.uuid4())
        store = SqlWebhookStore(make_factory(session))

        assert await store.deactivate_subscription(uuid.uuid4()) is True
        sql = str(session.execute.await_args.args[0])
        assert "webhook_subscriptions.is_active IS" in sql

        already_inactive = SqlWebhookStore(make_factory(make_session(scalar=None)))
        assert await already_inactive.deactivate_subscription(uuid.uuid4()) is False

    @pytest.mark.asyncio
    async def test_delete_missing_subscription(self):
        """Test that deleting an unknown id reports False."""
        store = SqlWebhookStore(make_factory(make_session(scalar=None)))

        assert await store.delete_subscription(uuid.uuid4()) is False


class TestDeliveries:
    """Tests for delivery persistence."""

    @pytest.mark.asyncio
    async def test_create_delivery_is_pending(self):
        """Test that new deliveries start pending with no attempts."""
        session = make_session()
        store = SqlWebhookStore(make_factory(session))
        subscription_id = uuid.uuid4()

        delivery = await store.create_delivery(subscription_id, "invoice.paid", {"event": "invoice.paid"})

        assert isinstance(delivery, WebhookDelivery)
        assert delivery.subscription_id == subscription_id
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempt_count == 0

    @pytest.mark.asyncio
    async def test_get_delivery(self):
        """Test fetching a delivery by id."""
        delivery = WebhookDelivery(event_type="invoice.paid")
        session = make_session(scalar=delivery)
        store = SqlWebhookStore(make_factory(session))
        delivery_id = uuid.uuid4()

        assert await store.get_delivery(delivery_id) is delivery
        session.get.assert_awaited_once_with(WebhookDelivery, delivery_id)

    @pytest.mark.asyncio
    async def test_update_delivery_with_expected_attempt_count(self):
        """Test that a conditional update filters on the attempt count it expects."""
        session = make_session(scalar=uuid.uuid4())
        store = SqlWebhookStore(make_factory(session))

        updated = await store.update_delivery(
            uuid.uuid4(), expected_attempt_count=2, status=DeliveryStatus.FAILED, attempt_count=3
        )

        assert updated is True
        sql = str(session.execute.await_args.args[0])
        assert "webhook_deliveries.attempt_count =" in sql

    @pytest.mark.asyncio
    async def test_update_delivery_reports_no_match(self):
        """Test that an update matching no row returns False."""
        store = SqlWebhookStore(make_factory(make_session(scalar=None)))

        assert await store.update_delivery(uuid.uuid4(), expected_attempt_count=0, attempt_count=1) is False

    @pytest.mark.asyncio
    async def test_purge_failed_deliveries_returns_count(self):
        """Test that the purge only targets terminal failures and reports a count."""
        session = make_session([uuid.uuid4(), uuid.uuid4(), uuid.uuid4()])
        store = SqlWebhookStore(make_factory(session))

        assert await store.purge_failed_deliveries(timedelta(days=60)) == 3

        sql = str(session.execute.await_args.args[0])
        assert "webhook_deliveries.next_retry_at IS NULL" in sql
