"""Step tracking and progress events for deployment and rollback pipelines.

A ProgressTracker owns the step list of one pipeline run and turns state
changes into ProgressEvent objects. It does not deliver events itself: the
orchestrator yields them from an async generator, so the caller consumes an
ordered stream that ends with exactly one final event.
"""

from dataclasses import dataclass
from typing import Optional

from models.schemas import (
    DeploymentRecord,
    DeploymentStep,
    ProgressEvent,
    ProgressEventType,
    StepStatus,
)


@dataclass(frozen=True)
class StepDefinition:
    id: str
    label: str
    estimated_seconds: int


DEPLOYMENT_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition("validate", "Validating ERD", 5),
    StepDefinition("publisher", "Creating Publisher", 10),
    StepDefinition("solution", "Setting up Solution", 15),
    StepDefinition("globalChoices", "Creating Global Choices", 20),
    StepDefinition("entities", "Creating Entities", 30),
    StepDefinition("relationships", "Setting up Relationships", 25),
    StepDefinition("finalize", "Finalizing Deployment", 10),
)

ROLLBACK_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition("relationships", "Deleting Relationships", 10),
    StepDefinition("customEntities", "Deleting Custom Entities", 20),
    StepDefinition("cdmEntities", "Removing CDM Entities from Solution", 10),
    StepDefinition("globalChoices", "Deleting Global Choices", 10),
    StepDefinition("solution", "Deleting Solution", 5),
    StepDefinition("publisher", "Deleting Publisher", 5),
)


class ProgressTracker:
    """Tracks step states for one pipeline run."""

    def __init__(self, steps: tuple[StepDefinition, ...] = DEPLOYMENT_STEPS):
        self.definitions = {s.id: s for s in steps}
        self.steps = [DeploymentStep(id=s.id, label=s.label) for s in steps]
        self._by_id = {s.id: s for s in self.steps}

    def _step(self, step_id: str) -> DeploymentStep:
        try:
            return self._by_id[step_id]
        except KeyError:
            raise ValueError(f"Unknown step: {step_id}") from None

    @property
    def percentage(self) -> int:
        completed = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        return round(completed / len(self.steps) * 100) if self.steps else 100

    @property
    def estimated_remaining_seconds(self) -> int:
        return sum(
            self.definitions[s.id].estimated_seconds
            for s in self.steps
            if s.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS)
        )

    def _event(self, step: DeploymentStep, message: Optional[str]) -> ProgressEvent:
        return ProgressEvent(
            type=ProgressEventType.PROGRESS,
            step_id=step.id,
            label=step.label,
            percentage=self.percentage,
            status=step.status.value,
            message=message,
        )

    def start_step(self, step_id: str, message: Optional[str] = None) -> ProgressEvent:
        step = self._step(step_id)
        step.status = StepStatus.IN_PROGRESS
        return self._event(step, message or f"{step.label}...")

    def complete_step(self, step_id: str, detail: Optional[str] = None) -> ProgressEvent:
        step = self._step(step_id)
        step.status = StepStatus.COMPLETED
        step.detail = detail
        return self._event(step, detail or f"{step.label} completed")

    def fail_step(self, step_id: str, error: str) -> ProgressEvent:
        step = self._step(step_id)
        step.status = StepStatus.FAILED
        step.detail = error
        return self._event(step, error)

    def skip_remaining(self) -> None:
        """Mark every step that never started as skipped."""
        for step in self.steps:
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.SKIPPED

    def log(self, message: str, step_id: Optional[str] = None) -> ProgressEvent:
        step = self._by_id.get(step_id) if step_id else None
        return ProgressEvent(
            type=ProgressEventType.LOG,
            step_id=step_id,
            label=step.label if step else None,
            percentage=self.percentage,
            message=message,
        )

    def final(self, record: DeploymentRecord, message: Optional[str] = None) -> ProgressEvent:
        return ProgressEvent(
            type=ProgressEventType.FINAL,
            percentage=self.percentage,
            status=record.status.value,
            message=message,
            record=record,
        )

    def snapshot(self) -> list[DeploymentStep]:
        """Copies of the current step states."""
        return [s.model_copy() for s in self.steps]
