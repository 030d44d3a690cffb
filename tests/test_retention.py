"""Tests for the retention sweep handler."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from hookrelay.db.models.base import DeliveryStatus
from hookrelay.services.job_queue import Job
from hookrelay.worker.handlers.retention import RETENTION_SWEEP, RetentionSweepHandler


def _age(delivery, days: int) -> None:
    delivery.updated_at = datetime.now(UTC) - timedelta(days=days)


class TestRetentionSweepHandler:
    """Tests for RetentionSweepHandler."""

    @pytest.mark.asyncio
    async def test_removes_only_expired_terminal_failures(self, webhook_store, metrics):
        """Test that delivered rows and pending retries survive the sweep."""
        subscription = webhook_store.add_subscription()
        expired = await webhook_store.create_delivery(subscription.id, "invoice.paid", {})
        retrying = await webhook_store.create_delivery(subscription.id, "invoice.paid", {})
        delivered = await webhook_store.create_delivery(subscription.id, "invoice.paid", {})
        recent = await webhook_store.create_delivery(subscription.id, "invoice.paid", {})
        expired.status = DeliveryStatus.FAILED
        retrying.status = DeliveryStatus.FAILED
        retrying.next_retry_at = datetime.now(UTC)
        delivered.status = DeliveryStatus.DELIVERED
        recent.status = DeliveryStatus.FAILED
        for delivery in (expired, retrying, delivered):
            _age(delivery, days=90)

        handler = RetentionSweepHandler(webhook_store, retention_days=60, metrics=metrics)
        result = await handler(Job(type=RETENTION_SWEEP))

        assert result == {"webhook_deliveries": 1, "job_records": 0}
        assert set(webhook_store.deliveries) == {retrying.id, delivered.id, recent.id}
        assert metrics.sample("hookrelay_retention_records_removed_total", {"kind": "webhook_deliveries"}) == 1

    @pytest.mark.asyncio
    async def test_purges_job_records_when_persistent(self, webhook_store):
        """Test that finished job records are purged with the same window."""
        job_store = MagicMock()
        job_store.purge_finished = AsyncMock(return_value=4)

        handler = RetentionSweepHandler(webhook_store, job_store=job_store, retention_days=60)
        result = await handler(Job(type=RETENTION_SWEEP))

        job_store.purge_finished.assert_awaited_once_with(timedelta(days=60))
        assert result["job_records"] == 4

    @pytest.mark.asyncio
    async def test_payload_overrides_retention_window(self):
        """Test that the job payload can shorten the window."""
        store = MagicMock()
        store.purge_failed_deliveries = AsyncMock(return_value=0)

        handler = RetentionSweepHandler(store, retention_days=60)
        await handler(Job(type=RETENTION_SWEEP, payload={"retention_days": 7}))

        store.purge_failed_deliveries.assert_awaited_once_with(timedelta(days=7))

    @pytest.mark.asyncio
    async def test_rejects_invalid_window(self):
        """Test that a non-positive window fails the job."""
        handler = RetentionSweepHandler(MagicMock(), retention_days=60)

        with pytest.raises(ValueError):
            await handler(Job(type=RETENTION_SWEEP, payload={"retention_days": 0}))
