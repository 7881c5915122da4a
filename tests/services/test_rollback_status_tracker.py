"""Tests for the rollback status tracker."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from models.schemas import RollbackRecord
from services.rollback_status_tracker import RollbackStatusTracker, TrackingStatus


class TestTrackerEntries:
    """Test entry creation and state transitions."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, rollback_tracker):
        """Should create a pending entry retrievable by id."""
        await rollback_tracker.create("rollback_1", "deploy_1")

        entry = await rollback_tracker.get("rollback_1")
        assert entry.deployment_id == "deploy_1"
        assert entry.status == TrackingStatus.PENDING
        assert entry.ended_at is None

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, rollback_tracker):
        assert await rollback_tracker.get("missing") is None

    @pytest.mark.asyncio
    async def test_returned_entries_are_copies(self, rollback_tracker):
        """Should not let callers mutate tracked state."""
        await rollback_tracker.create("rollback_1", "deploy_1")
        entry = await rollback_tracker.get("rollback_1")
        entry.status = TrackingStatus.FAILED

        assert (await rollback_tracker.get("rollback_1")).status == TrackingStatus.PENDING

    @pytest.mark.asyncio
    async def test_progress_moves_to_in_progress(self, rollback_tracker):
        """Should compute a rounded percentage and start the entry."""
        await rollback_tracker.create("rollback_1", "deploy_1")
        assert await rollback_tracker.update_progress("rollback_1", 1, 3, "Deleting")

        entry = await rollback_tracker.get("rollback_1")
        assert entry.status == TrackingStatus.IN_PROGRESS
        assert entry.progress.percentage == 33
        assert entry.progress.message == "Deleting"

    @pytest.mark.asyncio
    async def test_set_result_completes(self, rollback_tracker):
        await rollback_tracker.create("rollback_1", "deploy_1")
        await rollback_tracker.update_progress("rollback_1", 2, 6)
        await rollback_tracker.set_result(
            "rollback_1", RollbackRecord(rollback_id="rollback_1", deployment_id="deploy_1")
        )

        entry = await rollback_tracker.get("rollback_1")
        assert entry.status == TrackingStatus.COMPLETED
        assert entry.progress.percentage == 100
        assert entry.result.rollback_id == "rollback_1"
        assert entry.ended_at is not None

    @pytest.mark.asyncio
    async def test_set_error_fails(self, rollback_tracker):
        await rollback_tracker.create("rollback_1", "deploy_1")
        await rollback_tracker.set_error("rollback_1", "history unavailable")

        entry = await rollback_tracker.get("rollback_1")
        assert entry.status == TrackingStatus.FAILED
        assert entry.error == "history unavailable"
        assert entry.to_dict()["status"] == "failed"

    @pytest.mark.asyncio
    async def test_updates_to_unknown_entry(self, rollback_tracker):
        """Should report False instead of raising."""
        assert await rollback_tracker.update_status("nope", TrackingStatus.COMPLETED) is False
        assert await rollback_tracker.update_progress("nope", 1, 2) is False
        assert await rollback_tracker.set_error("nope", "x") is False
        assert await rollback_tracker.remove("nope") is False


class TestTrackerCleanup:
    """Test retention-based eviction and the cleanup task lifecycle."""

    @pytest.mark.asyncio
    async def test_cleanup_evicts_only_expired_finished_entries(self, rollback_tracker):
        await rollback_tracker.create("finished", "deploy_1")
        await rollback_tracker.update_status("finished", TrackingStatus.COMPLETED)
        await rollback_tracker.create("running", "deploy_2")
        await rollback_tracker.update_progress("running", 1, 6)

        later = datetime.now(UTC) + timedelta(hours=2)
        assert await rollback_tracker.cleanup_expired(now=later) == 1

        remaining = [e.rollback_id for e in await rollback_tracker.get_all()]
        assert remaining == ["running"]

    @pytest.mark.asyncio
    async def test_cleanup_keeps_recent_entries(self, rollback_tracker):
        await rollback_tracker.create("rollback_1", "deploy_1")
        await rollback_tracker.set_error("rollback_1", "boom")

        assert await rollback_tracker.cleanup_expired() == 0
        assert await rollback_tracker.get("rollback_1") is not None

    @pytest.mark.asyncio
    async def test_start_stop_lifecycle(self):
        """Should run the cleanup loop until stopped."""
        tracker = RollbackStatusTracker(retention_seconds=0, cleanup_interval=0.01)
        await tracker.create("rollback_1", "deploy_1")
        await tracker.update_status("rollback_1", TrackingStatus.COMPLETED)

        await tracker.start()
        await tracker.start()  # second start is a no-op
        assert tracker.is_running

        for _ in range(50):
            if await tracker.get("rollback_1") is None:
                break
            await asyncio.sleep(0.01)

        await tracker.stop()
        assert not tracker.is_running
        assert await tracker.get("rollback_1") is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, rollback_tracker):
        await rollback_tracker.stop()
        assert not rollback_tracker.is_running
