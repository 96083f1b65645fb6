"""
Tests for FollowUpWorker and ExecutionStats

Ticks run against the temp database with the messaging client mocked out.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from evolution_sender import EvolutionSender, SendResult
from followup.executor import ExecutionResult
from models import QueueItem
from scheduler.stats import ExecutionStats
from scheduler.worker import FollowUpWorker


@pytest.fixture
def sender():
    mock = MagicMock(spec=EvolutionSender)
    mock.send_text = AsyncMock(return_value=SendResult(True, message_id="MSG-1"))
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def worker(seeded, sender):
    return FollowUpWorker(
        seeded.db.get_bind(),
        stats=ExecutionStats(),
        poll_interval_minutes=1,
        max_items_per_tick=50,
        item_pause_seconds=0,
        sender_factory=lambda: sender,
        llm_factory=lambda: None,
    )


class TestExecutionStats:

    def test_initial_snapshot(self):
        snapshot = ExecutionStats().snapshot()

        assert snapshot["total_ticks"] == 0
        assert snapshot["success_rate"] is None
        assert snapshot["last_execution"] is None
        assert snapshot["started_at"].endswith("Z")

    def test_results_are_classified(self):
        stats = ExecutionStats()
        stats.record_result(ExecutionResult(1, "follow_up", success=True))
        stats.record_result(ExecutionResult(2, "reminder", success=True))
        stats.record_result(ExecutionResult(3, "follow_up", error="HTTP 500"))
        stats.record_result(ExecutionResult(4, "follow_up", deferred=True, reason="outside_business_hours"))
        stats.record_result(ExecutionResult(5, "follow_up", cancelled=True, reason="agent_paused"))
        stats.record_result(ExecutionResult(6, "follow_up", skipped=True, reason="claimed"))

        snapshot = stats.snapshot()

        assert snapshot["total_executions"] == 6
        assert snapshot["follow_ups_sent"] == 1
        assert snapshot["reminders_sent"] == 1
        assert snapshot["failed"] == 1
        assert snapshot["deferred"] == 1
        assert snapshot["cancelled"] == 1
        assert snapshot["skipped"] == 1
        # cancellations and deferrals do not count against the rate
        assert snapshot["success_rate"] == 66.67

    def test_unknown_counter_rejected(self):
        with pytest.raises(KeyError):
            ExecutionStats().increment("bogus")


class TestRunTick:

    @pytest.mark.asyncio
    async def test_due_follow_up_is_sent(self, seeded, make_follow_up, worker, sender):
        item = make_follow_up()

        summary = await worker.run_tick()

        assert summary["pending"] == 1
        assert summary["executed"] == 1
        sender.send_text.assert_awaited_once()
        sender.close.assert_awaited_once()

        seeded.db.expire_all()
        assert seeded.db.get(QueueItem, item.id).status == "sent"

        snapshot = worker.stats.snapshot()
        assert snapshot["follow_ups_sent"] == 1
        assert snapshot["total_ticks"] == 1
        assert snapshot["success_rate"] == 100.0
        assert snapshot["last_execution"] is not None

    @pytest.mark.asyncio
    async def test_orphan_is_created_and_executed_in_same_tick(self, seeded, add_message, worker, sender):
        add_message("Quanto custa?", minutes_ago=20)

        summary = await worker.run_tick()

        assert summary["orphans"] == 1
        assert summary["executed"] == 1
        assert worker.stats.snapshot()["orphans_created"] == 1

        seeded.db.expire_all()
        item = seeded.db.query(QueueItem).one()
        assert item.status == "sent"
        assert item.meta["source"] == "orphan"

    @pytest.mark.asyncio
    async def test_future_items_are_left_alone(self, seeded, make_follow_up, worker, sender):
        make_follow_up(scheduled_at=datetime.utcnow() + timedelta(minutes=30))

        summary = await worker.run_tick()

        assert summary["pending"] == 0
        sender.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tick_failure_is_counted_not_raised(self, seeded, worker):
        with patch("scheduler.worker.QueueService.list_pending", side_effect=RuntimeError("db gone")):
            summary = await worker.run_tick()

        assert summary["executed"] == 0
        snapshot = worker.stats.snapshot()
        assert snapshot["errors"] == 1
        assert snapshot["total_ticks"] == 1

    @pytest.mark.asyncio
    async def test_one_item_crashing_does_not_stop_the_batch(self, seeded, make_follow_up, make_reminder, worker, sender):
        make_follow_up()
        make_reminder()

        with patch("scheduler.worker.ExecutionDriver.execute", new=AsyncMock(
            side_effect=[RuntimeError("boom"), ExecutionResult(2, "reminder", success=True)]
        )):
            summary = await worker.run_tick()

        assert summary["executed"] == 1
        snapshot = worker.stats.snapshot()
        assert snapshot["errors"] == 1
        assert snapshot["reminders_sent"] == 1


class TestLifecycle:

    def test_overlapping_tick_is_skipped(self, worker):
        worker._tick_lock.acquire()
        try:
            assert worker.force_tick() is None
        finally:
            worker._tick_lock.release()

        assert worker.stats.snapshot()["total_ticks"] == 0

    def test_force_tick_runs_on_calling_thread(self, seeded, worker):
        summary = worker.force_tick()

        assert summary["pending"] == 0
        assert worker.stats.snapshot()["total_ticks"] == 1

    def test_start_and_stop(self, worker):
        with patch.object(worker, "_tick_blocking"):
            worker.start()
            assert worker.is_running()

            worker.stop(timeout=5)
            assert not worker.is_running()
