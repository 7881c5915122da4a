"""In-process status tracking for asynchronous rollbacks.

A rollback runs as a background task; clients poll its status by rollback id.
Entries live in memory and finished ones are evicted after the retention
window by a periodic cleanup task started with the application.

Usage:
    tracker = RollbackStatusTracker()
    await tracker.start()
    await tracker.create(rollback_id, deployment_id)
    await tracker.update_progress(rollback_id, 2, 6, "Deleting custom entities")
    entry = await tracker.get(rollback_id)
    await tracker.stop()
"""

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Optional

from config import get_settings
from models.schemas import RollbackRecord
from utils.logging import get_logger

logger = get_logger(__name__)


class TrackingStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_STATUSES = (TrackingStatus.COMPLETED, TrackingStatus.FAILED)


@dataclass
class RollbackProgress:
    current: int = 0
    total: int = 0
    percentage: int = 0
    message: str = ""


@dataclass
class RollbackTrackingEntry:
    rollback_id: str
    deployment_id: str
    status: TrackingStatus = TrackingStatus.PENDING
    progress: RollbackProgress = field(default_factory=RollbackProgress)
    result: Optional[RollbackRecord] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ended_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "rollback_id": self.rollback_id,
            "deployment_id": self.deployment_id,
            "status": self.status.value,
            "progress": {
                "current": self.progress.current,
                "total": self.progress.total,
                "percentage": self.progress.percentage,
                "message": self.progress.message,
            },
            "result": self.result.model_dump(mode="json") if self.result else None,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


class RollbackStatusTracker:
    """Keeps rollback entries and evicts finished ones after retention."""

    def __init__(
        self,
        retention_seconds: Optional[int] = None,
        cleanup_interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.retention = timedelta(
            seconds=retention_seconds
            if retention_seconds is not None
            else settings.rollback_status_retention
        )
        self.cleanup_interval = (
            cleanup_interval
            if cleanup_interval is not None
            else settings.rollback_cleanup_interval
        )
        self._entries: dict[str, RollbackTrackingEntry] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def start(self) -> None:
        """Start the periodic cleanup task. Calling twice is a no-op."""
        if self.is_running:
            return

        async def cleanup_loop():
            try:
                while True:
                    await asyncio.sleep(self.cleanup_interval)
                    try:
                        await self.cleanup_expired()
                    except Exception as e:
                        logger.error(f"Error in rollback status cleanup: {e}")
            except asyncio.CancelledError:
                pass  # Normal shutdown

        self._cleanup_task = asyncio.create_task(cleanup_loop())
        logger.info(
            "Rollback status tracker started",
            extra={
                "retention_seconds": self.retention.total_seconds(),
                "cleanup_interval": self.cleanup_interval,
            },
        )

    async def stop(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None
        logger.info("Rollback status tracker stopped")

    async def create(self, rollback_id: str, deployment_id: str) -> RollbackTrackingEntry:
        entry = RollbackTrackingEntry(rollback_id=rollback_id, deployment_id=deployment_id)
        async with self._lock:
            self._entries[rollback_id] = entry
            return copy.deepcopy(entry)

    async def get(self, rollback_id: str) -> Optional[RollbackTrackingEntry]:
        async with self._lock:
            entry = self._entries.get(rollback_id)
            return copy.deepcopy(entry) if entry else None

    async def get_all(self) -> list[RollbackTrackingEntry]:
        async with self._lock:
            return [copy.deepcopy(e) for e in self._entries.values()]

    async def update_status(self, rollback_id: str, status: TrackingStatus) -> bool:
        async with self._lock:
            entry = self._entries.get(rollback_id)
            if entry is None:
                return False
            entry.status = status
            if status in FINISHED_STATUSES and entry.ended_at is None:
                entry.ended_at = datetime.now(UTC)
            return True

    async def update_progress(
        self, rollback_id: str, current: int, total: int, message: str = ""
    ) -> bool:
        async with self._lock:
            entry = self._entries.get(rollback_id)
            if entry is None:
                return False
            if entry.status == TrackingStatus.PENDING:
                entry.status = TrackingStatus.IN_PROGRESS
            entry.progress = RollbackProgress(
                current=current,
                total=total,
                percentage=round(current / total * 100) if total else 0,
                message=message,
            )
            return True

    async def set_result(self, rollback_id: str, result: RollbackRecord) -> bool:
        async with self._lock:
            entry = self._entries.get(rollback_id)
            if entry is None:
                return False
            entry.result = result.model_copy(deep=True)
            entry.status = TrackingStatus.COMPLETED
            entry.ended_at = datetime.now(UTC)
            entry.progress.percentage = 100
            entry.progress.current = entry.progress.total
            return True

    async def set_error(self, rollback_id: str, message: str) -> bool:
        async with self._lock:
            entry = self._entries.get(rollback_id)
            if entry is None:
                return False
            entry.error = message
            entry.status = TrackingStatus.FAILED
            entry.ended_at = datetime.now(UTC)
            return True

    async def remove(self, rollback_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(rollback_id, None) is not None

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Evict finished entries that ended before the retention window."""
        now = now or datetime.now(UTC)
        cutoff = now - self.retention
        async with self._lock:
            expired = [
                rollback_id
                for rollback_id, entry in self._entries.items()
                if entry.status in FINISHED_STATUSES
                and entry.ended_at is not None
                and entry.ended_at < cutoff
            ]
            for rollback_id in expired:
                del self._entries[rollback_id]

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired rollback entries")
        return len(expired)
