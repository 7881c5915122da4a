"""Deployment history storage.

The deployment record is the only input a rollback needs, so every record is
stored with its full created-object list. Two backends are provided:
- InMemoryDeploymentHistory: process-local, bounded to the newest N records
- RedisDeploymentHistory: redis.asyncio, one JSON document per deployment
  plus a newest-first index list

Key format (Redis):
- deployment:{deployment_id} - DeploymentRecord JSON, expires after
  DEPLOYMENT_HISTORY_TTL
- deployments:index - deployment ids, newest first, trimmed to
  DEPLOYMENT_HISTORY_MAX_ENTRIES
"""

import asyncio
from collections import OrderedDict
from typing import Optional, Protocol, runtime_checkable

import redis.asyncio as redis

from config import get_settings
from models.schemas import AppliedRollback, DeploymentRecord, DeploymentStatus
from utils.logging import get_logger

logger = get_logger(__name__)

RECORD_KEY_PREFIX = "deployment"
INDEX_KEY = "deployments:index"


@runtime_checkable
class DeploymentHistory(Protocol):
    async def save(self, record: DeploymentRecord) -> None: ...

    async def get(self, deployment_id: str) -> Optional[DeploymentRecord]: ...

    async def list(self, limit: int = 20) -> list[DeploymentRecord]: ...

    async def update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        rollback_id: Optional[str] = None,
        applied: Optional[AppliedRollback] = None,
    ) -> Optional[DeploymentRecord]: ...


def _apply_status(
    record: DeploymentRecord,
    status: DeploymentStatus,
    rollback_id: Optional[str],
    applied: Optional[AppliedRollback],
) -> None:
    record.status = status
    if rollback_id and rollback_id not in record.rollbacks:
        record.rollbacks.append(rollback_id)
    if applied and all(a.rollback_id != applied.rollback_id for a in record.rollback_history):
        record.rollback_history.append(applied.model_copy(deep=True))


class InMemoryDeploymentHistory:
    """Process-local history keeping the newest max_entries records."""

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries or get_settings().deployment_history_max_entries
        # Insertion order is oldest first
        self._records: OrderedDict[str, DeploymentRecord] = OrderedDict()
        self._lock = asyncio.Lock()

    async def save(self, record: DeploymentRecord) -> None:
        async with self._lock:
            # Re-saving an existing id keeps its original position
            self._records[record.deployment_id] = record.model_copy(deep=True)
            while len(self._records) > self.max_entries:
                evicted, _ = self._records.popitem(last=False)
                logger.debug(f"Evicted deployment {evicted} from history")

    async def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        async with self._lock:
            record = self._records.get(deployment_id)
            return record.model_copy(deep=True) if record else None

    async def list(self, limit: int = 20) -> list[DeploymentRecord]:
        async with self._lock:
            newest_first = list(reversed(self._records.values()))[:limit]
            return [r.model_copy(deep=True) for r in newest_first]

    async def update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        rollback_id: Optional[str] = None,
        applied: Optional[AppliedRollback] = None,
    ) -> Optional[DeploymentRecord]:
        async with self._lock:
            record = self._records.get(deployment_id)
            if record is None:
                return None
            _apply_status(record, status, rollback_id, applied)
            return record.model_copy(deep=True)


class RedisDeploymentHistory:
    """Redis-backed history shared by every API worker."""

    def __init__(
        self,
        client: redis.Redis,
        ttl: Optional[int] = None,
        max_entries: Optional[int] = None,
    ):
        settings = get_settings()
        self._redis = client
        self.ttl = ttl or settings.deployment_history_ttl
        self.max_entries = max_entries or settings.deployment_history_max_entries

    def _record_key(self, deployment_id: str) -> str:
        return f"{RECORD_KEY_PREFIX}:{deployment_id}"

    async def save(self, record: DeploymentRecord) -> None:
        key = self._record_key(record.deployment_id)
        is_new = not await self._redis.exists(key)

        await self._redis.setex(key, self.ttl, record.model_dump_json())
        if is_new:
            await self._redis.lpush(INDEX_KEY, record.deployment_id)
            await self._redis.ltrim(INDEX_KEY, 0, self.max_entries - 1)
        logger.debug(f"Saved deployment {record.deployment_id} ({record.status.value})")

    async def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        raw = await self._redis.get(self._record_key(deployment_id))
        if not raw:
            return None
        return DeploymentRecord.model_validate_json(raw)

    async def list(self, limit: int = 20) -> list[DeploymentRecord]:
        ids = await self._redis.lrange(INDEX_KEY, 0, max(limit, 1) - 1)
        if not ids:
            return []

        raw_records = await self._redis.mget([self._record_key(i) for i in ids])
        records = []
        for deployment_id, raw in zip(ids, raw_records):
            if raw is None:
                # Expired record; the index entry is trimmed on a later save
                logger.debug(f"Deployment {deployment_id} expired from history")
                continue
            records.append(DeploymentRecord.model_validate_json(raw))
        return records

    async def update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        rollback_id: Optional[str] = None,
        applied: Optional[AppliedRollback] = None,
    ) -> Optional[DeploymentRecord]:
        record = await self.get(deployment_id)
        if record is None:
            return None
        _apply_status(record, status, rollback_id, applied)
        await self._redis.setex(
            self._record_key(deployment_id), self.ttl, record.model_dump_json()
        )
        return record
