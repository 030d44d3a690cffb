"""Tests for the periodic job scheduler.

Tests cover:
- First fire after one full interval
- Repeated fires and fire bookkeeping
- Deduplication of identical schedules
- Idempotent cancellation
- Default schedules from settings
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from hookrelay.services.job_queue import JobQueue
from hookrelay.worker.handlers.retention import RETENTION_SWEEP
from hookrelay.worker.scheduler import ScheduledJob, Scheduler, default_schedules

INTERVAL = timedelta(milliseconds=50)


@pytest.fixture
def queue() -> MagicMock:
    return MagicMock(spec=JobQueue)


class TestSchedule:
    """Tests for Scheduler.schedule."""

    @pytest.mark.asyncio
    async def test_first_fire_after_full_interval(self, queue):
        """Test that nothing is enqueued on registration."""
        scheduler = Scheduler(queue)

        task = scheduler.schedule("report.daily", INTERVAL)
        await asyncio.sleep(0.02)
        queue.enqueue.assert_not_called()

        await asyncio.sleep(0.06)
        queue.enqueue.assert_called_with("report.daily", {})
        assert task.fires >= 1
        assert task.last_fired_at is not None
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_fires_repeatedly_with_payload(self, queue):
        """Test that each fire enqueues a copy of the payload."""
        scheduler = Scheduler(queue)

        task = scheduler.schedule("report.daily", INTERVAL, {"scope": "all"})
        await asyncio.sleep(0.18)
        scheduler.cancel(task)

        assert queue.enqueue.call_count >= 2
        assert task.fires == queue.enqueue.call_count
        for call in queue.enqueue.call_args_list:
            assert call.args == ("report.daily", {"scope": "all"})

    @pytest.mark.asyncio
    async def test_same_pair_returns_existing_task(self, queue):
        """Test that scheduling an identical pair does not duplicate it."""
        scheduler = Scheduler(queue)

        first = scheduler.schedule("report.daily", INTERVAL)
        second = scheduler.schedule("report.daily", INTERVAL)
        other = scheduler.schedule("report.daily", INTERVAL * 2)

        assert first is second
        assert other is not first
        assert len(scheduler.tasks) == 2
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_rejects_non_positive_interval(self, queue):
        """Test that zero intervals are rejected."""
        scheduler = Scheduler(queue)

        with pytest.raises(ValueError):
            scheduler.schedule("report.daily", timedelta(0))

    @pytest.mark.asyncio
    async def test_enqueue_failure_keeps_schedule_running(self, queue):
        """Test that an enqueue error is logged and the loop continues."""
        queue.enqueue.side_effect = [RuntimeError("queue closed"), MagicMock()]
        scheduler = Scheduler(queue)

        task = scheduler.schedule("report.daily", INTERVAL)
        await asyncio.sleep(0.13)

        assert queue.enqueue.call_count >= 2
        assert task.active is True
        scheduler.cancel_all()


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_stops_future_fires(self, queue):
        """Test that a cancelled task never fires again."""
        scheduler = Scheduler(queue)
        task = scheduler.schedule("report.daily", INTERVAL)

        scheduler.cancel(task)
        await asyncio.sleep(0.08)

        queue.enqueue.assert_not_called()
        assert task.active is False
        assert scheduler.tasks == []

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, queue):
        """Test that cancelling twice is harmless."""
        scheduler = Scheduler(queue)
        task = scheduler.schedule("report.daily", INTERVAL)

        scheduler.cancel(task)
        scheduler.cancel(task)

        assert task.active is False

    @pytest.mark.asyncio
    async def test_reschedule_after_cancel_creates_new_task(self, queue):
        """Test that a cancelled pair can be scheduled again."""
        scheduler = Scheduler(queue)
        first = scheduler.schedule("report.daily", INTERVAL)
        scheduler.cancel(first)

        second = scheduler.schedule("report.daily", INTERVAL)

        assert second is not first
        assert second.active is True
        scheduler.cancel_all()


class TestDefaultSchedules:
    """Tests for default schedule definitions."""

    def test_default_schedules_include_retention(self):
        """Test that the retention sweep runs at the configured interval."""
        settings = MagicMock()
        settings.retention.sweep_interval_hours = 12

        [schedule] = default_schedules(settings)

        assert schedule.job_type == RETENTION_SWEEP
        assert schedule.interval == timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_add_schedules_skips_disabled(self, queue):
        """Test that disabled definitions are not scheduled."""
        scheduler = Scheduler(queue)

        tasks = scheduler.add_schedules(
            [
                ScheduledJob(job_type="a", interval=timedelta(hours=1)),
                ScheduledJob(job_type="b", interval=timedelta(hours=1), enabled=False),
            ]
        )

        assert [task.job_type for task in tasks] == ["a"]
        scheduler.cancel_all()
