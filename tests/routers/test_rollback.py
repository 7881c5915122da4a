"""Tests for the rollback router."""

import pytest
from fastapi import HTTPException

from models.errors import DeploymentNotFoundError, InputError
from models.schemas import RollbackOptions
from routers.rollback import get_rollback_eligibility, get_rollback_status, start_rollback
from services.rollback_orchestrator import RollbackOrchestrator
from tests.factories import DeploymentRecordFactory


@pytest.fixture
def orchestrator(platform_client, history, rollback_tracker, settings):
    return RollbackOrchestrator(platform_client, history, rollback_tracker, settings=settings)


class TestEligibilityEndpoint:
    """Tests for GET /{deployment_id}/eligibility."""

    @pytest.mark.asyncio
    async def test_eligible_deployment(self, orchestrator, history):
        record = DeploymentRecordFactory.create()
        await history.save(record)

        eligibility = await get_rollback_eligibility(
            record.deployment_id, orchestrator=orchestrator
        )

        assert eligibility.can_rollback is True
        assert eligibility.reason is None


class TestStartRollback:
    """Tests for POST /{deployment_id}."""

    @pytest.mark.asyncio
    async def test_returns_status_url(self, orchestrator, history):
        record = DeploymentRecordFactory.create()
        await history.save(record)

        response = await start_rollback(record.deployment_id, None, orchestrator=orchestrator)
        await orchestrator.wait_for_all()

        assert response.deployment_id == record.deployment_id
        assert response.status_url == f"/api/rollback/status/{response.rollback_id}"

        status = await get_rollback_status(response.rollback_id, orchestrator=orchestrator)
        assert status["status"] == "completed"
        assert status["result"]["status"] == "success"

    @pytest.mark.asyncio
    async def test_unknown_deployment(self, orchestrator):
        with pytest.raises(DeploymentNotFoundError):
            await start_rollback("deploy_missing", None, orchestrator=orchestrator)

    @pytest.mark.asyncio
    async def test_conflicting_options(self, orchestrator, history):
        record = DeploymentRecordFactory.create()
        await history.save(record)

        with pytest.raises(InputError):
            await start_rollback(
                record.deployment_id,
                RollbackOptions(relationships=False),
                orchestrator=orchestrator,
            )


class TestRollbackStatus:
    """Tests for GET /status/{rollback_id}."""

    @pytest.mark.asyncio
    async def test_unknown_rollback_is_404(self, orchestrator):
        with pytest.raises(HTTPException) as exc_info:
            await get_rollback_status("rollback_missing", orchestrator=orchestrator)
        assert exc_info.value.status_code == 404
