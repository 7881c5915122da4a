# Models
from models.errors import (
    ConflictError,
    DeploymentNotFoundError,
    ErdDeployError,
    ExternalServiceError,
    InputError,
    ObjectNotFoundError,
    RollbackNotAllowedError,
    RollbackPartialError,
)
from models.schemas import (
    CreatedObjects,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentStatus,
    DiagramEntity,
    MatchResult,
    RelationshipRecord,
    RollbackOptions,
    RollbackRecord,
)

__all__ = [
    # Errors
    "ErdDeployError",
    "InputError",
    "ConflictError",
    "ExternalServiceError",
    "ObjectNotFoundError",
    "RollbackPartialError",
    "DeploymentNotFoundError",
    "RollbackNotAllowedError",
    # Schemas
    "CreatedObjects",
    "DeploymentRecord",
    "DeploymentRequest",
    "DeploymentStatus",
    "DiagramEntity",
    "MatchResult",
    "RelationshipRecord",
    "RollbackOptions",
    "RollbackRecord",
]
