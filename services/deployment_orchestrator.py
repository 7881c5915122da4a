"""Staged deployment of a resolved diagram to the remote platform.

Pipeline (strictly ordered, each step waits for the previous one):
    validate -> publisher -> solution -> globalChoices -> entities
    -> relationships -> finalize

Design:
- Every platform call is bounded by EXTERNAL_CALL_TIMEOUT; a timeout is a
  step failure like any other
- No retries: calls create objects, so a failed step is reported rather than
  repeated
- Every created object is appended to the record's created_objects right
  after its call returns, so a failed run still describes exactly what a
  rollback has to remove
- On failure the pipeline halts; the record ends as "partial" when objects
  were created and "failed" otherwise
- Progress is an async stream of ProgressEvent ending with one final event
  that carries the DeploymentRecord

Usage:
    orchestrator = DeploymentOrchestrator(client, history)
    async for event in orchestrator.deploy(request):
        ...
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from config import Settings, get_settings
from models.errors import ConflictError, ErdDeployError, ExternalServiceError, InputError
from models.schemas import (
    DeploymentRecord,
    DeploymentRequest,
    DeploymentStatus,
    ProgressEvent,
    ProgressEventType,
    PublisherSpec,
    SolutionSpec,
)
from services.deployment_history import DeploymentHistory
from services.normalizer import normalize
from services.platform_client import PlatformClient
from services.progress import DEPLOYMENT_STEPS, ProgressTracker
from services.relationship_validator import RelationshipValidator
from utils.logging import get_logger

logger = get_logger(__name__)

_SOLUTION_NAME_INVALID = re.compile(r"[^A-Za-z0-9_]")


def generate_deployment_id() -> str:
    return f"deploy_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


def solution_unique_name(solution_name: str) -> str:
    """Platform unique names allow only letters, digits and underscores."""
    return _SOLUTION_NAME_INVALID.sub("", solution_name.replace(" ", "_"))


@dataclass
class DeploymentRun:
    """State shared by the steps of one deployment."""

    request: DeploymentRequest
    record: DeploymentRecord
    publisher: PublisherSpec
    solution_unique_name: str
    detail: Optional[str] = None
    logs: list[str] = field(default_factory=list)


StepHandler = Callable[[DeploymentRun], Awaitable[None]]


class DeploymentOrchestrator:
    """Runs the deployment pipeline against a PlatformClient."""

    def __init__(
        self,
        client: PlatformClient,
        history: DeploymentHistory,
        validator: Optional[RelationshipValidator] = None,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.history = history
        self.validator = validator or RelationshipValidator()
        self.settings = settings or get_settings()
        self.timeout = self.settings.external_call_timeout

        self._steps: list[tuple[str, StepHandler]] = [
            ("validate", self._validate),
            ("publisher", self._ensure_publisher),
            ("solution", self._ensure_solution),
            ("globalChoices", self._create_global_choices),
            ("entities", self._create_entities),
            ("relationships", self._create_relationships),
            ("finalize", self._finalize),
        ]
        # Strong references to pipelines that outlive their HTTP stream
        self._tasks: set[asyncio.Task] = set()

    def default_publisher(self) -> PublisherSpec:
        friendly_name = self.settings.default_publisher_name
        return PublisherSpec(
            unique_name=friendly_name.replace(" ", ""),
            friendly_name=friendly_name,
            prefix=self.settings.default_publisher_prefix,
        )

    async def deploy(self, request: DeploymentRequest) -> AsyncIterator[ProgressEvent]:
        """Execute the pipeline, yielding progress events.

        The last event is always of type "final" and carries the terminal
        DeploymentRecord.
        """
        tracker = ProgressTracker(DEPLOYMENT_STEPS)
        record = DeploymentRecord(
            deployment_id=generate_deployment_id(),
            steps=tracker.snapshot(),
            solution_name=request.solution_name,
            environment_url=request.environment_url,
        )
        run = DeploymentRun(
            request=request,
            record=record,
            publisher=request.publisher or self.default_publisher(),
            solution_unique_name=solution_unique_name(request.solution_name),
        )
        log_extra = {"deployment_id": record.deployment_id}

        logger.info(
            f"Starting deployment {record.deployment_id}",
            extra={
                **log_extra,
                "solution": request.solution_name,
                "custom_entities": len(request.entities),
                "cdm_entities": len(request.cdm_entities),
                "relationships": len(request.relationships),
            },
        )
        await self._save(record)

        for step_id, handler in self._steps:
            event = tracker.start_step(step_id)
            record.steps = tracker.snapshot()
            yield event

            run.detail = None
            run.logs.clear()
            try:
                await handler(run)
            except ErdDeployError as e:
                failure = e
            except Exception as e:
                logger.exception(
                    f"Unexpected error in deployment step {step_id}", extra=log_extra
                )
                failure = ExternalServiceError(step_id, f"Unexpected error: {e}", e)
            else:
                for message in run.logs:
                    yield tracker.log(message, step_id)
                event = tracker.complete_step(step_id, run.detail)
                record.steps = tracker.snapshot()
                yield event
                logger.debug(f"Deployment step {step_id} completed", extra=log_extra)
                continue

            # Step failed: halt, keep everything created so far
            for message in run.logs:
                yield tracker.log(message, step_id)
            event = tracker.fail_step(step_id, failure.message)
            tracker.skip_remaining()
            await self._finish_failed(record, tracker, step_id, failure)
            yield event
            yield tracker.final(record, message=failure.message)
            return

        record.steps = tracker.snapshot()
        await self._save(record)

        logger.info(
            f"Deployment {record.deployment_id} completed successfully",
            extra={
                **log_extra,
                "duration_ms": (
                    (record.completed_at or datetime.now(UTC)) - record.started_at
                ).total_seconds()
                * 1000,
            },
        )
        yield tracker.final(record, message="Deployment completed successfully")

    async def deploy_to_completion(self, request: DeploymentRequest) -> DeploymentRecord:
        """Run the pipeline and return only the terminal record."""
        final: Optional[ProgressEvent] = None
        async for event in self.deploy(request):
            if event.type == ProgressEventType.FINAL:
                final = event
        if final is None or final.record is None:
            raise ErdDeployError("Deployment pipeline ended without a final record")
        return final.record

    async def stream_detached(
        self, request: DeploymentRequest
    ) -> AsyncIterator[ProgressEvent]:
        """Yield the events of a pipeline running in its own task.

        The pipeline keeps running when the consumer stops reading (e.g. an
        HTTP client disconnects); there is no mid-pipeline cancellation.
        """
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()

        async def pump():
            async for event in self.deploy(request):
                await queue.put(event)

        task = asyncio.create_task(pump())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        while True:
            get_event = asyncio.ensure_future(queue.get())
            try:
                done, _ = await asyncio.wait(
                    {get_event, task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                if not get_event.done():
                    get_event.cancel()

            if get_event in done:
                event = get_event.result()
                yield event
                if event.type == ProgressEventType.FINAL:
                    return
                continue

            # Pipeline task ended; drain anything it queued before stopping
            while not queue.empty():
                event = queue.get_nowait()
                yield event
                if event.type == ProgressEventType.FINAL:
                    return
            if task.exception() is not None:
                raise task.exception()
            return

    async def wait_for_all(self) -> None:
        """Wait for every detached pipeline (used at shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _validate(self, run: DeploymentRun) -> None:
        request = run.request

        if not run.solution_unique_name:
            raise InputError("Solution name must contain letters or digits")
        if not request.entities and not request.cdm_entities:
            raise InputError("Nothing to deploy: no custom or CDM entities were given")

        seen: dict[str, str] = {}
        for entity in request.entities:
            key = normalize(entity.name)
            if not key:
                raise InputError(f"Entity name '{entity.name}' is empty after normalization")
            if key in seen:
                raise InputError(
                    f"Entities '{seen[key]}' and '{entity.name}' resolve to the same name"
                )
            seen[key] = entity.name

        for name in request.cdm_entities:
            if not name.strip():
                raise InputError("CDM entity names must not be empty")

        choice_names = [normalize(c.name) for c in request.global_choices]
        if len(set(choice_names)) != len(choice_names):
            raise InputError("Global choice names must be unique")

        known = set(seen) | {normalize(n) for n in request.cdm_entities}
        for record in request.relationships:
            for endpoint in (record.referencing_entity, record.referenced_entity):
                if normalize(endpoint) not in known:
                    run.logs.append(
                        f"Relationship {record.schema_name} references '{endpoint}', "
                        "which is not part of this deployment"
                    )

        entity_names = [e.name for e in request.entities] + list(request.cdm_entities)
        validation = self.validator.validate(request.relationships, entity_names)
        for warning in validation.warnings:
            run.logs.append(f"Warning: {warning.message}")
        if not validation.is_valid:
            raise ConflictError(
                f"Relationship validation failed: {validation.summary['message']}",
                validation,
            )

        run.detail = (
            f"Validated {len(request.entities)} custom entities, "
            f"{len(request.cdm_entities)} CDM entities and "
            f"{len(request.relationships)} relationships"
        )

    async def _ensure_publisher(self, run: DeploymentRun) -> None:
        created = run.record.created_objects
        spec = run.publisher

        publisher_id = await self._call(
            "publisher", "find publisher", self.client.find_publisher(spec.unique_name)
        )
        if publisher_id:
            run.logs.append(f"Using existing publisher {spec.unique_name}")
            created.publisher_created = False
        else:
            publisher_id = await self._call(
                "publisher", "create publisher", self.client.create_publisher(spec)
            )
            created.publisher_created = True

        created.publisher_id = publisher_id
        created.publisher_prefix = spec.prefix
        run.detail = f"Publisher {spec.unique_name} ({spec.prefix})"

    async def _ensure_solution(self, run: DeploymentRun) -> None:
        created = run.record.created_objects
        request = run.request
        unique_name = run.solution_unique_name

        solution_id = await self._call(
            "solution", "find solution", self.client.find_solution(unique_name)
        )
        if solution_id:
            run.logs.append(f"Using existing solution {unique_name}")
            created.solution_created = False
        elif request.use_existing_solution:
            raise ExternalServiceError(
                "solution", f"Solution {unique_name} does not exist"
            )
        else:
            spec = SolutionSpec(
                unique_name=unique_name,
                friendly_name=request.solution_display_name or request.solution_name,
                publisher_id=created.publisher_id,
            )
            solution_id = await self._call(
                "solution", "create solution", self.client.create_solution(spec)
            )
            created.solution_created = True

        created.solution_id = solution_id
        created.solution_unique_name = unique_name
        run.detail = f"Solution {unique_name}"

    async def _create_global_choices(self, run: DeploymentRun) -> None:
        created = run.record.created_objects
        for spec in run.request.global_choices:
            name = await self._call(
                "globalChoices",
                f"create global choice {spec.name}",
                self.client.create_global_choice(
                    spec, run.publisher.prefix, run.solution_unique_name
                ),
            )
            created.global_choices.append(name)
            run.logs.append(f"Created global choice {name}")
        run.detail = f"Created {len(created.global_choices)} global choices"

    async def _create_entities(self, run: DeploymentRun) -> None:
        created = run.record.created_objects
        for entity in run.request.entities:
            logical_name = await self._call(
                "entities",
                f"create entity {entity.name}",
                self.client.create_entity(
                    entity, run.publisher.prefix, run.solution_unique_name
                ),
            )
            created.custom_entities.append(logical_name)
            run.logs.append(f"Created entity {logical_name}")

        for logical_name in run.request.cdm_entities:
            await self._call(
                "entities",
                f"add CDM entity {logical_name} to solution",
                self.client.add_entity_to_solution(run.solution_unique_name, logical_name),
            )
            created.cdm_entities.append(logical_name)
            run.logs.append(f"Added CDM entity {logical_name} to solution")

        run.detail = (
            f"Created {len(created.custom_entities)} custom entities, "
            f"added {len(created.cdm_entities)} CDM entities"
        )

    async def _create_relationships(self, run: DeploymentRun) -> None:
        created = run.record.created_objects
        for relationship in run.request.relationships:
            schema_name = await self._call(
                "relationships",
                f"create relationship {relationship.schema_name}",
                self.client.create_relationship(relationship, run.solution_unique_name),
            )
            created.relationships.append(schema_name)
            run.logs.append(f"Created relationship {schema_name}")
        run.detail = f"Created {len(created.relationships)} relationships"

    async def _finalize(self, run: DeploymentRun) -> None:
        record = run.record
        record.status = DeploymentStatus.SUCCESS
        record.completed_at = datetime.now(UTC)
        run.detail = "Deployment finalized"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _call(self, step_id: str, operation: str, call: Awaitable[Any]) -> Any:
        """Await one platform call within the timeout, without retrying."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except TimeoutError as e:
            raise ExternalServiceError(
                step_id, f"{operation} timed out after {self.timeout}s", e
            ) from e
        except ErdDeployError:
            raise
        except Exception as e:
            raise ExternalServiceError(step_id, f"{operation} failed: {e}", e) from e

    async def _finish_failed(
        self,
        record: DeploymentRecord,
        tracker: ProgressTracker,
        step_id: str,
        failure: ErdDeployError,
    ) -> None:
        record.steps = tracker.snapshot()
        record.status = (
            DeploymentStatus.PARTIAL
            if record.created_objects.has_created_objects()
            else DeploymentStatus.FAILED
        )
        record.failed_step = step_id
        record.error = failure.message
        record.completed_at = datetime.now(UTC)

        logger.error(
            f"Deployment {record.deployment_id} failed at step {step_id}: {failure.message}",
            extra={
                "deployment_id": record.deployment_id,
                "failed_step": step_id,
                "status": record.status.value,
                "error_type": type(failure).__name__,
            },
        )
        await self._save(record)

    async def _save(self, record: DeploymentRecord) -> None:
        """Persist the record; history failures never abort a deployment."""
        try:
            await self.history.save(record)
        except Exception as e:
            logger.error(
                f"Failed to save deployment {record.deployment_id} to history: {e}",
                extra={"deployment_id": record.deployment_id},
            )
