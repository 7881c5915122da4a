"""Tests for the staged deployment pipeline.

Covers step order, the progress stream contract, created-object tracking,
halting on failure, partial vs failed status, timeouts and history writes.
"""

import re
from unittest.mock import AsyncMock

import pytest

from models.errors import ErdDeployError
from models.schemas import (
    DeploymentStatus,
    ProgressEventType,
    PublisherSpec,
    StepStatus,
)
from services.deployment_orchestrator import (
    DeploymentOrchestrator,
    generate_deployment_id,
    solution_unique_name,
)
from tests.factories import DeploymentRequestFactory, RelationshipFactory

# ============================================================================
# Helpers & Fixtures
# ============================================================================


async def collect(orchestrator, request):
    return [event async for event in orchestrator.deploy(request)]


def final_record(events):
    return events[-1].record


@pytest.fixture
def orchestrator(platform_client, history, settings):
    return DeploymentOrchestrator(platform_client, history, settings=settings)


# ============================================================================
# Successful Deployments
# ============================================================================


class TestSuccessfulDeployment:
    """Test a full run against a healthy platform."""

    @pytest.mark.asyncio
    async def test_three_entities_two_relationships(self, orchestrator, platform_client):
        """Should create every object and end with status success."""
        request = DeploymentRequestFactory.three_entities_two_relationships()
        events = await collect(orchestrator, request)

        record = final_record(events)
        assert record.status == DeploymentStatus.SUCCESS
        created = record.created_objects
        assert created.publisher_created and created.solution_created
        assert created.publisher_prefix == "cmmd"
        assert created.custom_entities == ["cmmd_spaceship", "cmmd_voyage", "cmmd_crew"]
        assert created.relationships == ["cmmd_spaceship_voyage", "cmmd_voyage_crew"]
        assert platform_client.entities == set(created.custom_entities)
        assert all(s.status == StepStatus.COMPLETED for s in record.steps)
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_calls_follow_step_order(self, orchestrator, platform_client):
        """Should issue calls strictly in pipeline order."""
        request = DeploymentRequestFactory.create(
            entities=["Zebra"],
            cdm_entities=["account"],
            global_choices=["Priority"],
            relationships=[RelationshipFactory.lookup("account", "Zebra")],
        )
        await collect(orchestrator, request)

        assert platform_client.call_names() == [
            "find_publisher",
            "create_publisher",
            "find_solution",
            "create_solution",
            "create_global_choice",
            "create_entity",
            "add_entity_to_solution",
            "create_relationship",
        ]

    @pytest.mark.asyncio
    async def test_progress_stream_contract(self, orchestrator):
        """Should end with exactly one final event and never go backwards."""
        events = await collect(
            orchestrator, DeploymentRequestFactory.three_entities_two_relationships()
        )

        finals = [e for e in events if e.type == ProgressEventType.FINAL]
        assert len(finals) == 1
        assert events[-1] is finals[0]
        percentages = [e.percentage for e in events]
        assert percentages == sorted(percentages)
        assert events[-1].percentage == 100
        assert events[-1].status == "success"

    @pytest.mark.asyncio
    async def test_log_events_name_created_objects(self, orchestrator):
        """Should emit a log event per created entity."""
        events = await collect(orchestrator, DeploymentRequestFactory.create(entities=["Zebra"]))

        logs = [e.message for e in events if e.type == ProgressEventType.LOG]
        assert "Created entity cmmd_zebra" in logs

    @pytest.mark.asyncio
    async def test_record_saved_to_history(self, orchestrator, history):
        """Should persist the terminal record."""
        events = await collect(orchestrator, DeploymentRequestFactory.create())
        record = final_record(events)

        stored = await history.get(record.deployment_id)
        assert stored.status == DeploymentStatus.SUCCESS
        assert stored.step("finalize").status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reuses_existing_publisher_and_solution(self, orchestrator, platform_client):
        """Should record reused publisher and solution as not created."""
        platform_client.publishers["CustomERDPublisher"] = "publisher-existing"
        platform_client.solutions["ShipyardSolution"] = "solution-existing"

        record = await orchestrator.deploy_to_completion(DeploymentRequestFactory.create())

        created = record.created_objects
        assert created.publisher_id == "publisher-existing"
        assert created.publisher_created is False
        assert created.solution_id == "solution-existing"
        assert created.solution_created is False
        assert platform_client.count("create_publisher") == 0
        assert platform_client.count("create_solution") == 0

    @pytest.mark.asyncio
    async def test_custom_publisher(self, orchestrator, platform_client):
        """Should use the publisher from the request."""
        request = DeploymentRequestFactory.create(
            entities=["Zebra"],
            publisher=PublisherSpec(unique_name="Zoo", friendly_name="Zoo", prefix="zoo"),
        )
        record = await orchestrator.deploy_to_completion(request)

        assert record.created_objects.publisher_prefix == "zoo"
        assert record.created_objects.custom_entities == ["zoo_zebra"]
        assert "Zoo" in platform_client.publishers


# ============================================================================
# Failures
# ============================================================================


class TestDeploymentFailures:
    """Test halting, created-object tracking and terminal status on failure."""

    @pytest.mark.asyncio
    async def test_failure_mid_step_keeps_created_objects(self, orchestrator, platform_client):
        """Should keep objects created before the failure and make no later calls."""
        platform_client.fail_on("create_entity", RuntimeError("quota exceeded"), call_number=2)
        events = await collect(
            orchestrator, DeploymentRequestFactory.three_entities_two_relationships()
        )

        record = final_record(events)
        assert record.status == DeploymentStatus.PARTIAL
        assert record.failed_step == "entities"
        assert "quota exceeded" in record.error
        assert record.created_objects.custom_entities == ["cmmd_spaceship"]
        assert platform_client.count("create_entity") == 2
        assert platform_client.count("create_relationship") == 0
        assert record.step("entities").status == StepStatus.FAILED
        assert record.step("relationships").status == StepStatus.SKIPPED
        assert record.step("finalize").status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_failure_before_anything_created_is_failed(self, orchestrator, platform_client):
        """Should report failed when no object was created."""
        platform_client.fail_on("create_publisher", RuntimeError("unauthorized"))
        record = await orchestrator.deploy_to_completion(DeploymentRequestFactory.create())

        assert record.status == DeploymentStatus.FAILED
        assert record.failed_step == "publisher"
        assert not record.created_objects.has_created_objects()
        assert platform_client.call_names() == ["find_publisher", "create_publisher"]

    @pytest.mark.asyncio
    async def test_no_retries(self, orchestrator, platform_client):
        """Should call a failing operation exactly once."""
        platform_client.fail_on("create_global_choice", ConnectionError("reset"))
        record = await orchestrator.deploy_to_completion(
            DeploymentRequestFactory.create(global_choices=["Priority", "Size"])
        )

        assert record.status == DeploymentStatus.PARTIAL
        assert platform_client.count("create_global_choice") == 1

    @pytest.mark.asyncio
    async def test_timeout_is_a_step_failure(
        self, platform_client, history, fast_timeout_settings
    ):
        """Should fail the step when a call exceeds the timeout."""
        orchestrator = DeploymentOrchestrator(
            platform_client, history, settings=fast_timeout_settings
        )
        platform_client.delay("create_solution", 1.0)

        record = await orchestrator.deploy_to_completion(DeploymentRequestFactory.create())

        assert record.failed_step == "solution"
        assert "timed out" in record.error
        # Publisher was created before the timeout
        assert record.status == DeploymentStatus.PARTIAL
        assert platform_client.count("create_entity") == 0

    @pytest.mark.asyncio
    async def test_missing_existing_solution(self, orchestrator, platform_client):
        """Should fail when use_existing_solution names no existing solution."""
        record = await orchestrator.deploy_to_completion(
            DeploymentRequestFactory.create(use_existing_solution=True)
        )

        assert record.failed_step == "solution"
        assert platform_client.count("create_solution") == 0

    @pytest.mark.asyncio
    async def test_failure_saved_to_history(self, orchestrator, platform_client, history):
        """Should persist failed deployments with their error."""
        platform_client.fail_on("create_solution", RuntimeError("boom"))
        record = await orchestrator.deploy_to_completion(DeploymentRequestFactory.create())

        stored = await history.get(record.deployment_id)
        assert stored.status == DeploymentStatus.PARTIAL
        assert stored.failed_step == "solution"
        assert stored.error == record.error

    @pytest.mark.asyncio
    async def test_final_event_after_failure(self, orchestrator, platform_client):
        """Should still end the stream with exactly one final event."""
        platform_client.fail_on("create_relationship", RuntimeError("boom"))
        events = await collect(
            orchestrator, DeploymentRequestFactory.three_entities_two_relationships()
        )

        assert [e.type for e in events].count(ProgressEventType.FINAL) == 1
        assert events[-1].type == ProgressEventType.FINAL
        assert events[-1].status == "partial"


# ============================================================================
# Validation Step
# ============================================================================


class TestValidationStep:
    """Test that invalid input halts before any external call."""

    @pytest.mark.asyncio
    async def test_cycle_is_a_conflict(self, orchestrator, platform_client):
        """Should fail validation on a cascade cycle without calling the platform."""
        request = DeploymentRequestFactory.create(
            entities=["Spaceship", "Voyage"],
            relationships=RelationshipFactory.cycle(["Spaceship", "Voyage"]),
        )
        record = await orchestrator.deploy_to_completion(request)

        assert record.status == DeploymentStatus.FAILED
        assert record.failed_step == "validate"
        assert "Relationship validation failed" in record.error
        assert platform_client.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_entity_names(self, orchestrator, platform_client):
        """Should reject entities that normalize to the same name."""
        request = DeploymentRequestFactory.create(entities=["Space Ship", "spaceship"])
        record = await orchestrator.deploy_to_completion(request)

        assert record.failed_step == "validate"
        assert platform_client.calls == []

    @pytest.mark.asyncio
    async def test_nothing_to_deploy(self, orchestrator, platform_client):
        """Should reject a request without entities."""
        record = await orchestrator.deploy_to_completion(
            DeploymentRequestFactory.create(entities=[])
        )

        assert record.status == DeploymentStatus.FAILED
        assert "Nothing to deploy" in record.error

    @pytest.mark.asyncio
    async def test_validation_warnings_are_logged(self, orchestrator):
        """Should surface validator warnings as log events and still deploy."""
        request = DeploymentRequestFactory.create(
            entities=["Zebra"],
            relationships=[RelationshipFactory.lookup("Zebra", "Zebra", is_required=True)],
        )
        events = await collect(orchestrator, request)

        logs = [e.message for e in events if e.type == ProgressEventType.LOG]
        assert any(m.startswith("Warning:") for m in logs)
        assert final_record(events).status == DeploymentStatus.SUCCESS


# ============================================================================
# History & Helpers
# ============================================================================


class TestHistoryAndHelpers:
    """Test history resilience and id generation."""

    @pytest.mark.asyncio
    async def test_history_failure_does_not_fail_deployment(self, platform_client, settings):
        """Should finish the deployment when history writes fail."""
        history = AsyncMock()
        history.save.side_effect = ConnectionError("redis down")
        orchestrator = DeploymentOrchestrator(platform_client, history, settings=settings)

        record = await orchestrator.deploy_to_completion(DeploymentRequestFactory.create())

        assert record.status == DeploymentStatus.SUCCESS
        assert history.save.await_count == 2

    @pytest.mark.asyncio
    async def test_stream_detached_yields_full_stream(self, orchestrator):
        """Should relay every event of the background pipeline."""
        request = DeploymentRequestFactory.create()
        events = [e async for e in orchestrator.stream_detached(request)]

        assert events[-1].type == ProgressEventType.FINAL
        assert events[-1].record.status == DeploymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_abandoned_stream_still_finishes(self, orchestrator, platform_client, history):
        """Should keep the pipeline running after the consumer stops reading."""
        platform_client.delay("create_relationship", 0.05)
        request = DeploymentRequestFactory.three_entities_two_relationships()

        stream = orchestrator.stream_detached(request)
        first = await anext(stream)
        await stream.aclose()
        assert first.type != ProgressEventType.FINAL

        await orchestrator.wait_for_all()

        records = await history.list()
        assert len(records) == 1
        assert records[0].status == DeploymentStatus.SUCCESS
        assert platform_client.count("create_relationship") == 2

    @pytest.mark.asyncio
    async def test_missing_final_event_raises(self, orchestrator):
        """Should raise a domain error instead of returning no record."""

        async def no_events(request):
            return
            yield

        orchestrator.deploy = no_events

        with pytest.raises(ErdDeployError, match="without a final record"):
            await orchestrator.deploy_to_completion(DeploymentRequestFactory.create())

    def test_deployment_id_format(self):
        """Should generate deploy_{unix_ms}_{8 hex} ids."""
        assert re.fullmatch(r"deploy_\d{13}_[0-9a-f]{8}", generate_deployment_id())

    def test_solution_unique_name(self):
        """Should keep only letters, digits and underscores."""
        assert solution_unique_name("Shipyard Solution (v2)!") == "Shipyard_Solution_v2"
