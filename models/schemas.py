"""Pydantic schemas for diagram input, catalog matching, deployment and rollback."""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Publisher customization prefix: 2-8 lowercase alphanumerics, leading letter
PUBLISHER_PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9]{1,7}$")


# ---------------------------------------------------------------------------
# Parser output (read-only input to the core)
# ---------------------------------------------------------------------------


class DiagramAttribute(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=200)
    type: str = Field("string", max_length=100)
    is_primary_key: bool = Field(
        False, alias="isPrimaryKey", serialization_alias="is_primary_key"
    )


class DiagramEntity(BaseModel):
    name: str = Field(..., max_length=200)
    attributes: list[DiagramAttribute] = Field(default_factory=list)

    @property
    def primary_key(self) -> Optional[DiagramAttribute]:
        return next((a for a in self.attributes if a.is_primary_key), None)


class DiagramRelationship(BaseModel):
    """A relationship as written in the diagram, before CDM/custom resolution."""

    model_config = ConfigDict(populate_by_name=True)

    from_entity: str = Field(
        ..., alias="fromEntity", serialization_alias="from_entity"
    )
    to_entity: str = Field(..., alias="toEntity", serialization_alias="to_entity")
    cardinality: str = Field(
        "one-to-many",
        description="one-to-one, one-to-many, many-to-one or many-to-many",
    )
    is_identifying: bool = Field(
        False, alias="isIdentifying", serialization_alias="is_identifying"
    )
    label: Optional[str] = None


# ---------------------------------------------------------------------------
# Catalog matching
# ---------------------------------------------------------------------------


class RegistryEntity(BaseModel):
    """A standard (CDM) entity from the platform's built-in catalog."""

    model_config = ConfigDict(frozen=True)

    logical_name: str
    display_name: str
    aliases: frozenset[str] = frozenset()
    key_attributes: tuple[str, ...] = ()
    category: str = "core"
    description: str = ""


class MatchType(str, Enum):
    EXACT = "exact"
    ALIAS = "alias"
    FUZZY = "fuzzy"


class MatchResult(BaseModel):
    original_entity: DiagramEntity
    registry_entity: RegistryEntity
    match_type: MatchType
    confidence: float = Field(..., ge=0.0, le=1.0)
    attribute_overlap: float = Field(
        0.0,
        ge=0.0,
        le=1.0,
        description="Share of the registry entity's key attributes found on the diagram entity",
    )


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class DetectionSummary(BaseModel):
    total_entities: int = 0
    cdm_matches: int = 0
    custom_entities: int = 0
    confidence_level: ConfidenceLevel = ConfidenceLevel.NONE


class Recommendation(BaseModel):
    type: Literal["use_cdm", "integration"]
    priority: Literal["high", "medium", "low"]
    message: str
    entities: list[str] = Field(default_factory=list)


class DetectionResult(BaseModel):
    summary: DetectionSummary
    matches: list[MatchResult] = Field(default_factory=list)
    custom_entities: list[DiagramEntity] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Resolved relationships
# ---------------------------------------------------------------------------


class CascadeDelete(str, Enum):
    """Delete behavior of a relationship on the target platform."""

    CASCADE = "Cascade"
    REMOVE_LINK = "RemoveLink"
    RESTRICT = "Restrict"


class RelationshipRecord(BaseModel):
    """A platform-ready relationship definition."""

    model_config = ConfigDict(frozen=True)

    referencing_entity: str = Field(..., min_length=1, description="Child (many side)")
    referenced_entity: str = Field(..., min_length=1, description="Parent (one side)")
    schema_name: str = Field(..., min_length=1)
    cascade_delete: CascadeDelete = CascadeDelete.REMOVE_LINK
    lookup_field_name: str = Field(..., min_length=1)
    is_required: bool = False

    @property
    def is_parental(self) -> bool:
        return self.cascade_delete == CascadeDelete.CASCADE

    @property
    def is_self_referencing(self) -> bool:
        return self.referencing_entity == self.referenced_entity


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class PublisherSpec(BaseModel):
    unique_name: str = Field(..., min_length=1, max_length=100)
    friendly_name: str = Field(..., min_length=1, max_length=200)
    prefix: str

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        v = v.strip().lower()
        if not PUBLISHER_PREFIX_PATTERN.match(v):
            raise ValueError(
                "Prefix must be 2-8 lowercase letters or digits starting with a letter"
            )
        return v


class SolutionSpec(BaseModel):
    unique_name: str
    friendly_name: str
    publisher_id: str


class GlobalChoiceSpec(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_name: Optional[str] = None
    options: list[str] = Field(..., min_length=1)


class DeploymentRequest(BaseModel):
    """Everything needed to deploy a resolved diagram."""

    solution_name: str = Field(..., min_length=1, max_length=100)
    solution_display_name: Optional[str] = None
    publisher: Optional[PublisherSpec] = None
    entities: list[DiagramEntity] = Field(
        default_factory=list, description="Custom entities to create"
    )
    relationships: list[RelationshipRecord] = Field(default_factory=list)
    cdm_entities: list[str] = Field(
        default_factory=list,
        description="Logical names of standard entities to add to the solution",
    )
    global_choices: list[GlobalChoiceSpec] = Field(default_factory=list)
    use_existing_solution: bool = False
    environment_url: Optional[str] = None


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    # Set by rollback after the deployment is terminal
    ROLLED_BACK = "rolled_back"
    MODIFIED = "modified"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeploymentStep(BaseModel):
    id: str
    label: str
    status: StepStatus = StepStatus.PENDING
    detail: Optional[str] = None


class CreatedObjects(BaseModel):
    """Every platform object a deployment created, in creation order."""

    publisher_id: Optional[str] = None
    publisher_prefix: Optional[str] = None
    publisher_created: bool = False
    solution_id: Optional[str] = None
    solution_unique_name: Optional[str] = None
    solution_created: bool = False
    global_choices: list[str] = Field(default_factory=list)
    custom_entities: list[str] = Field(default_factory=list)
    cdm_entities: list[str] = Field(default_factory=list)
    relationships: list[str] = Field(default_factory=list)

    def has_created_objects(self) -> bool:
        """Whether anything durable exists on the platform because of this deployment."""
        return bool(
            self.publisher_created
            or self.solution_created
            or self.global_choices
            or self.custom_entities
            or self.cdm_entities
            or self.relationships
        )


class DeploymentRecord(BaseModel):
    deployment_id: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    steps: list[DeploymentStep] = Field(default_factory=list)
    created_objects: CreatedObjects = Field(default_factory=CreatedObjects)
    solution_name: Optional[str] = None
    environment_url: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    rollbacks: list[str] = Field(default_factory=list)
    rollback_history: list["AppliedRollback"] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status != DeploymentStatus.PENDING

    def rolled_back_kinds(self) -> set[str]:
        """Object kinds that an earlier rollback removed completely."""
        return {kind for applied in self.rollback_history for kind in applied.completed}

    def step(self, step_id: str) -> Optional[DeploymentStep]:
        return next((s for s in self.steps if s.id == step_id), None)


class ProgressEventType(str, Enum):
    PROGRESS = "progress"
    LOG = "log"
    FINAL = "final"


class ProgressEvent(BaseModel):
    """One item of a deployment or rollback progress stream."""

    type: ProgressEventType
    step_id: Optional[str] = None
    label: Optional[str] = None
    percentage: int = Field(0, ge=0, le=100)
    status: Optional[str] = None
    message: Optional[str] = None
    record: Optional[DeploymentRecord] = None


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


ROLLBACK_KINDS = (
    "relationships",
    "custom_entities",
    "cdm_entities",
    "global_choices",
    "solution",
    "publisher",
)


class RollbackOptions(BaseModel):
    """Which kinds of created objects a rollback removes."""

    relationships: bool = True
    custom_entities: bool = True
    cdm_entities: bool = True
    global_choices: bool = True
    solution: bool = True
    publisher: bool = True

    @property
    def is_complete(self) -> bool:
        return all(
            (
                self.relationships,
                self.custom_entities,
                self.cdm_entities,
                self.global_choices,
                self.solution,
                self.publisher,
            )
        )

    def selected(self) -> list[str]:
        return [kind for kind in ROLLBACK_KINDS if getattr(self, kind)]


class RollbackEligibility(BaseModel):
    can_rollback: bool
    reason: Optional[str] = None


class RollbackStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RollbackCounts(BaseModel):
    relationships_deleted: int = 0
    custom_entities_deleted: int = 0
    cdm_entities_removed: int = 0
    global_choices_deleted: int = 0
    solution_deleted: bool = False
    publisher_deleted: bool = False

    @property
    def total(self) -> int:
        return (
            self.relationships_deleted
            + self.custom_entities_deleted
            + self.cdm_entities_removed
            + self.global_choices_deleted
            + int(self.solution_deleted)
            + int(self.publisher_deleted)
        )


class RollbackRecord(BaseModel):
    rollback_id: str
    deployment_id: str
    status: RollbackStatus = RollbackStatus.SUCCESS
    options: RollbackOptions = Field(default_factory=RollbackOptions)
    counts: RollbackCounts = Field(default_factory=RollbackCounts)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None


class RollbackStartResponse(BaseModel):
    rollback_id: str
    deployment_id: str
    status_url: str


class AppliedRollback(BaseModel):
    """What one finished rollback did to a deployment."""

    rollback_id: str
    options: RollbackOptions
    status: RollbackStatus
    completed: list[str] = Field(default_factory=list)


DeploymentRecord.model_rebuild()
ProgressEvent.model_rebuild()
