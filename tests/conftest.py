"""Shared pytest fixtures for ERD deployment API tests."""

from unittest.mock import AsyncMock

import pytest

from config import Settings
from services.catalog_matcher import CatalogMatcher
from services.cdm_registry import load_registry
from services.deployment_history import InMemoryDeploymentHistory
from services.relationship_validator import RelationshipValidator
from services.rollback_status_tracker import RollbackStatusTracker
from tests.mocks import MockPlatformClient
from utils.cache import TTLCache

# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def settings():
    """Default settings, isolated from any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def fast_timeout_settings():
    """Settings with a short external call timeout for timeout tests."""
    return Settings(_env_file=None, external_call_timeout=0.05)


# ============================================================================
# Catalog Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def registry():
    """The packaged CDM registry."""
    return load_registry()


@pytest.fixture
def cache():
    return TTLCache(default_ttl=300)


@pytest.fixture
def matcher(registry, settings, cache):
    return CatalogMatcher(registry, settings, cache=cache)


@pytest.fixture
def validator():
    return RelationshipValidator()


# ============================================================================
# Platform & Storage Fixtures
# ============================================================================


@pytest.fixture
def platform_client():
    """In-memory platform client that records every call."""
    return MockPlatformClient()


@pytest.fixture
def history():
    return InMemoryDeploymentHistory(max_entries=50)


@pytest.fixture
def rollback_tracker():
    return RollbackStatusTracker(retention_seconds=3600, cleanup_interval=3600)


# ============================================================================
# Redis Fixtures
# ============================================================================


@pytest.fixture
def mock_redis_with_data():
    """Factory for a mock Redis backed by plain dict/list storage.

    Supports the string and list commands used by the deployment history.

    Example:
        redis = mock_redis_with_data({"deployment:deploy_1": '{"...": "..."}'})
    """

    def _create_redis(data: dict | None = None):
        data = data if data is not None else {}
        redis = AsyncMock()
        redis.data = data
        redis.ttls = {}

        async def mock_get(key):
            return data.get(key)

        async def mock_setex(key, ttl, value):
            data[key] = value
            redis.ttls[key] = ttl
            return True

        async def mock_exists(*keys):
            return sum(1 for k in keys if k in data)

        async def mock_mget(keys):
            return [data.get(k) for k in keys]

        async def mock_lpush(key, *values):
            items = data.setdefault(key, [])
            for value in values:
                items.insert(0, value)
            return len(items)

        async def mock_ltrim(key, start, end):
            items = data.get(key, [])
            data[key] = items[start : end + 1]
            return True

        async def mock_lrange(key, start, end):
            items = data.get(key, [])
            return items[start : end + 1]

        redis.get = AsyncMock(side_effect=mock_get)
        redis.setex = AsyncMock(side_effect=mock_setex)
        redis.exists = AsyncMock(side_effect=mock_exists)
        redis.mget = AsyncMock(side_effect=mock_mget)
        redis.lpush = AsyncMock(side_effect=mock_lpush)
        redis.ltrim = AsyncMock(side_effect=mock_ltrim)
        redis.lrange = AsyncMock(side_effect=mock_lrange)
        redis.ping = AsyncMock(return_value=True)
        redis.aclose = AsyncMock()

        return redis

    return _create_redis
