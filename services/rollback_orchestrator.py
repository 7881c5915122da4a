"""Rollback of a recorded deployment.

Removes exactly the objects listed in a deployment's created_objects, in the
reverse of creation order so no deletion is blocked by a dependent object:
    relationships -> custom entities -> CDM entities (removed from the
    solution only) -> global choices -> solution -> publisher

Design:
- A rollback runs as a background task; start_rollback() returns its id at
  once and callers poll the RollbackStatusTracker
- Best-effort: a failed deletion is recorded and the pipeline continues
- An object that no longer exists counts as deleted, with a warning
- A reused publisher or solution is never deleted
- Granular options allow partial rollbacks. Each finished rollback is kept in
  the deployment record with the kinds it removed completely; later rollbacks
  skip those kinds. The deployment becomes "rolled_back" only once every kind
  is removed, "modified" when some are, and keeps its status when none are
"""

import asyncio
import time
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from config import Settings, get_settings
from models.errors import (
    DeploymentNotFoundError,
    InputError,
    ObjectNotFoundError,
    RollbackNotAllowedError,
    RollbackPartialError,
)
from models.schemas import (
    ROLLBACK_KINDS,
    AppliedRollback,
    CreatedObjects,
    DeploymentRecord,
    DeploymentStatus,
    RollbackEligibility,
    RollbackOptions,
    RollbackRecord,
    RollbackStatus,
)
from services.deployment_history import DeploymentHistory
from services.platform_client import PlatformClient
from services.progress import ROLLBACK_STEPS
from services.rollback_status_tracker import RollbackStatusTracker, RollbackTrackingEntry
from utils.logging import LogContext, get_logger

logger = get_logger(__name__)

ROLLBACK_ELIGIBLE_STATUSES = (
    DeploymentStatus.SUCCESS,
    DeploymentStatus.PARTIAL,
    DeploymentStatus.MODIFIED,
)

STEP_KINDS = {
    "relationships": "relationships",
    "customEntities": "custom_entities",
    "cdmEntities": "cdm_entities",
    "globalChoices": "global_choices",
    "solution": "solution",
    "publisher": "publisher",
}


def generate_rollback_id() -> str:
    return f"rollback_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


def validate_rollback_options(options: RollbackOptions) -> list[str]:
    """Check option dependencies; return warnings, raise InputError on conflicts.

    The platform refuses to delete an object that something still depends on,
    so each option requires the options for its dependents.
    """
    if not any(
        (
            options.relationships,
            options.custom_entities,
            options.cdm_entities,
            options.global_choices,
            options.solution,
            options.publisher,
        )
    ):
        raise InputError("At least one rollback option must be selected")

    problems = []
    if options.custom_entities and not options.relationships:
        problems.append("Deleting custom entities requires deleting relationships")
    if options.solution and not (options.custom_entities and options.cdm_entities):
        problems.append(
            "Deleting the solution requires deleting custom entities "
            "and removing CDM entities"
        )
    if options.publisher and not options.solution:
        problems.append("Deleting the publisher requires deleting the solution")
    if problems:
        raise InputError("; ".join(problems), details={"problems": problems})

    warnings = []
    if options.global_choices and not options.custom_entities:
        warnings.append(
            "Global choices are deleted while custom entities are kept; "
            "columns using them may fail to delete"
        )
    return warnings


class RollbackOrchestrator:
    """Runs rollbacks against a PlatformClient and tracks their status."""

    def __init__(
        self,
        client: PlatformClient,
        history: DeploymentHistory,
        tracker: RollbackStatusTracker,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.history = history
        self.tracker = tracker
        self.settings = settings or get_settings()
        self.timeout = self.settings.external_call_timeout
        # Strong references so running rollbacks are not garbage collected
        self._tasks: set[asyncio.Task] = set()

    async def can_rollback(self, deployment_id: str) -> RollbackEligibility:
        record = await self.history.get(deployment_id)
        return self._eligibility(record)

    def _eligibility(self, record: Optional[DeploymentRecord]) -> RollbackEligibility:
        if record is None:
            return RollbackEligibility(can_rollback=False, reason="Deployment not found")
        if record.status == DeploymentStatus.ROLLED_BACK:
            return RollbackEligibility(
                can_rollback=False, reason="Deployment has already been rolled back"
            )
        if record.status not in ROLLBACK_ELIGIBLE_STATUSES:
            return RollbackEligibility(
                can_rollback=False,
                reason="Only successful or partial deployments can be rolled back",
            )
        return RollbackEligibility(can_rollback=True)

    async def start_rollback(
        self, deployment_id: str, options: Optional[RollbackOptions] = None
    ) -> str:
        """Launch a rollback in the background and return its id."""
        options = options or RollbackOptions()
        validate_rollback_options(options)

        eligibility = await self.can_rollback(deployment_id)
        if not eligibility.can_rollback:
            if eligibility.reason == "Deployment not found":
                raise DeploymentNotFoundError(deployment_id)
            raise RollbackNotAllowedError(deployment_id, eligibility.reason or "")

        rollback_id = generate_rollback_id()
        await self.tracker.create(rollback_id, deployment_id)

        task = asyncio.create_task(self._run(deployment_id, rollback_id, options))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            f"Rollback {rollback_id} started for deployment {deployment_id}",
            extra={
                "rollback_id": rollback_id,
                "deployment_id": deployment_id,
                "complete": options.is_complete,
            },
        )
        return rollback_id

    async def get_rollback_status(self, rollback_id: str) -> Optional[RollbackTrackingEntry]:
        return await self.tracker.get(rollback_id)

    async def wait_for_all(self) -> None:
        """Wait for every running rollback task (used at shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(
        self, deployment_id: str, rollback_id: str, options: RollbackOptions
    ) -> None:
        async with LogContext(deployment_id=deployment_id, rollback_id=rollback_id):
            try:
                result = await self.rollback(deployment_id, rollback_id, options)
            except Exception as e:
                logger.exception(f"Rollback {rollback_id} crashed")
                await self.tracker.set_error(rollback_id, str(e))
                return
            await self.tracker.set_result(rollback_id, result)

    async def rollback(
        self,
        deployment_id: str,
        rollback_id: Optional[str] = None,
        options: Optional[RollbackOptions] = None,
    ) -> RollbackRecord:
        """Run the rollback pipeline to completion and return its record."""
        options = options or RollbackOptions()
        rollback_id = rollback_id or generate_rollback_id()
        warnings = validate_rollback_options(options)

        deployment = await self.history.get(deployment_id)
        eligibility = self._eligibility(deployment)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        if not eligibility.can_rollback:
            raise RollbackNotAllowedError(deployment_id, eligibility.reason or "")

        result = RollbackRecord(
            rollback_id=rollback_id,
            deployment_id=deployment_id,
            options=options,
            warnings=warnings,
        )
        created = deployment.created_objects
        counts = result.counts

        logger.info(
            f"Rolling back deployment {deployment_id}",
            extra={
                "rollback_id": rollback_id,
                "relationships": len(created.relationships),
                "custom_entities": len(created.custom_entities),
                "cdm_entities": len(created.cdm_entities),
                "global_choices": len(created.global_choices),
            },
        )

        already_done = deployment.rolled_back_kinds()
        completed: list[str] = []
        total = len(ROLLBACK_STEPS)
        for index, step in enumerate(ROLLBACK_STEPS):
            await self.tracker.update_progress(rollback_id, index, total, step.label)
            kind = STEP_KINDS[step.id]
            if not getattr(options, kind):
                continue
            if kind in already_done:
                result.warnings.append(
                    f"Skipped {kind.replace('_', ' ')}: already rolled back earlier"
                )
                continue
            errors_before = len(result.errors)
            await self._run_step(kind, step.id, result, created)
            if len(result.errors) == errors_before:
                completed.append(kind)
        await self.tracker.update_progress(rollback_id, total, total, "Rollback finished")

        if not result.errors:
            result.status = RollbackStatus.SUCCESS
        elif counts.total == 0:
            result.status = RollbackStatus.FAILED
        else:
            result.status = RollbackStatus.PARTIAL
        result.completed_at = datetime.now(UTC)

        removed = already_done | set(completed)
        if removed >= set(ROLLBACK_KINDS):
            new_status = DeploymentStatus.ROLLED_BACK
        elif completed:
            new_status = DeploymentStatus.MODIFIED
        else:
            # Nothing was fully removed, so the deployment stays as it was
            new_status = deployment.status
        applied = AppliedRollback(
            rollback_id=rollback_id,
            options=options,
            status=result.status,
            completed=completed,
        )
        await self.history.update_status(deployment_id, new_status, rollback_id, applied)

        log = logger.info if result.status == RollbackStatus.SUCCESS else logger.warning
        log(
            f"Rollback {rollback_id} finished with status {result.status.value}",
            extra={
                "rollback_id": rollback_id,
                "deployment_id": deployment_id,
                "deleted": counts.total,
                "errors": len(result.errors),
                "warnings": len(result.warnings),
            },
        )
        return result

    async def _run_step(
        self, kind: str, step_id: str, result: RollbackRecord, created: CreatedObjects
    ) -> None:
        counts = result.counts
        if kind == "relationships":
            for schema_name in reversed(created.relationships):
                if await self._delete(
                    result, step_id, schema_name,
                    lambda: self.client.delete_relationship(schema_name),
                ):
                    counts.relationships_deleted += 1
        elif kind == "custom_entities":
            for logical_name in reversed(created.custom_entities):
                if await self._delete(
                    result, step_id, logical_name,
                    lambda: self.client.delete_entity(logical_name),
                ):
                    counts.custom_entities_deleted += 1
        elif kind == "cdm_entities":
            await self._remove_cdm_entities(result, created)
        elif kind == "global_choices":
            for name in reversed(created.global_choices):
                if await self._delete(
                    result, step_id, name,
                    lambda: self.client.delete_global_choice(name),
                ):
                    counts.global_choices_deleted += 1
        elif kind == "solution":
            if created.solution_created and created.solution_id:
                counts.solution_deleted = await self._delete(
                    result, step_id, created.solution_unique_name or created.solution_id,
                    lambda: self.client.delete_solution(created.solution_id),
                )
        elif kind == "publisher":
            if created.publisher_created and created.publisher_id:
                counts.publisher_deleted = await self._delete(
                    result, step_id, created.publisher_id,
                    lambda: self.client.delete_publisher(created.publisher_id),
                )

    async def _remove_cdm_entities(
        self, result: RollbackRecord, created: CreatedObjects
    ) -> None:
        if not created.cdm_entities:
            return
        if not created.solution_unique_name:
            result.warnings.append("No solution recorded; CDM entities were left in place")
            return
        for logical_name in reversed(created.cdm_entities):
            # Standard entities are only taken out of the solution, never deleted
            if await self._delete(
                result, "cdmEntities", logical_name,
                lambda: self.client.remove_entity_from_solution(
                    created.solution_unique_name, logical_name
                ),
            ):
                result.counts.cdm_entities_removed += 1

    async def _delete(
        self,
        result: RollbackRecord,
        step_id: str,
        identifier: str,
        call: Callable[[], Awaitable[Any]],
    ) -> bool:
        """Run one deletion; True when the object is gone afterwards."""
        try:
            await asyncio.wait_for(call(), timeout=self.timeout)
            return True
        except ObjectNotFoundError:
            result.warnings.append(f"{identifier} was already deleted")
            return True
        except TimeoutError:
            error = RollbackPartialError(
                step_id, identifier, f"timed out after {self.timeout}s"
            )
        except Exception as e:
            error = RollbackPartialError(step_id, identifier, str(e))

        result.errors.append(error.message)
        logger.error(
            error.message,
            extra={"rollback_id": result.rollback_id, "step": step_id, "identifier": identifier},
        )
        return False
