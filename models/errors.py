"""Error taxonomy and standardized error response schema.

Domain exceptions raised by the matcher, validator and orchestrators, plus the
response body every API error is rendered into.

Usage:
    from models.errors import ErrorResponse, create_error_response

    return create_error_response(
        error=ErrorType.EXTERNAL_SERVICE_ERROR,
        message="Step 'solution' failed: quota exceeded",
        details={"step": "solution", "deployment_id": "deploy_..."},
    )

Error response format:
{
    "error": "ExternalServiceError",
    "message": "Step 'solution' failed: quota exceeded",
    "details": {"step": "solution", "deployment_id": "deploy_..."},
    "request_id": "abc-123-def-456",
    "timestamp": "2026-01-29T12:00:00Z",
    "path": "/api/deployments"
}
"""

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from services.relationship_validator import ValidationResult


# =============================================================================
# Domain exceptions
# =============================================================================


class ErdDeployError(Exception):
    """Base class for all domain errors."""

    error_type = "InternalError"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InputError(ErdDeployError):
    """Malformed or incomplete diagram data.

    Raised before any external call is made, so it never has side effects.
    """

    error_type = "InputError"
    status_code = 400


class ConflictError(ErdDeployError):
    """The relationship graph violates a structural platform constraint.

    Carries the full ValidationResult so callers can render its suggestions.
    """

    error_type = "Conflict"
    status_code = 409

    def __init__(self, message: str, validation: "ValidationResult"):
        self.validation = validation
        super().__init__(message, details=validation.to_dict())


class ExternalServiceError(ErdDeployError):
    """A platform call failed (auth, network, quota or timeout)."""

    error_type = "ExternalServiceError"
    status_code = 502

    def __init__(
        self,
        step: str,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        self.step = step
        self.cause = cause
        super().__init__(f"Step '{step}' failed: {message}", details={"step": step})


class ObjectNotFoundError(ErdDeployError):
    """The platform has no object with the requested identifier.

    Rollback treats this as an already-satisfied deletion.
    """

    error_type = "NotFound"
    status_code = 404

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(
            f"{kind} '{identifier}' does not exist",
            details={"kind": kind, "identifier": identifier},
        )


class RollbackPartialError(ErdDeployError):
    """One or more deletions failed during a rollback.

    Collected per failure while the rollback continues; never aborts it.
    """

    error_type = "RollbackPartial"
    status_code = 500

    def __init__(self, step: str, identifier: str, message: str):
        self.step = step
        self.identifier = identifier
        super().__init__(
            f"Failed to delete {identifier} during {step}: {message}",
            details={"step": step, "identifier": identifier},
        )


class DeploymentNotFoundError(ErdDeployError):
    error_type = "NotFound"
    status_code = 404

    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(
            f"Deployment {deployment_id} not found",
            details={"deployment_id": deployment_id},
        )


class RollbackNotAllowedError(ErdDeployError):
    """The deployment is not eligible for rollback."""

    error_type = "Conflict"
    status_code = 409

    def __init__(self, deployment_id: str, reason: str):
        self.deployment_id = deployment_id
        self.reason = reason
        super().__init__(
            reason, details={"deployment_id": deployment_id, "reason": reason}
        )


# =============================================================================
# Response schema
# =============================================================================


class ErrorResponse(BaseModel):
    """Standard error response schema for all API endpoints.

    Attributes:
        error: Error type/code (e.g., "InputError", "NotFound", "ExternalServiceError")
        message: Human-readable error message suitable for display to users
        details: Optional additional context about the error
        request_id: Optional request correlation ID for tracing
        timestamp: When the error occurred (ISO 8601 format)
        path: Optional request path that caused the error
    """

    error: str = Field(
        ...,
        description="Error type/code (e.g., 'InputError', 'NotFound')",
        examples=["InputError", "NotFound", "ExternalServiceError"],
    )
    message: str = Field(
        ...,
        description="Human-readable error message",
        examples=["Deployment deploy_1769690096789_1a2b3c4d not found"],
    )
    details: Optional[dict[str, Any]] = Field(
        default=None,
        description="Additional error context (failing step, validation result, etc.)",
        examples=[{"step": "solution"}],
    )
    request_id: Optional[str] = Field(
        default=None,
        description="Request correlation ID for tracing",
    )
    timestamp: str = Field(
        default_factory=lambda: datetime.now(UTC).isoformat(),
        description="When the error occurred (ISO 8601)",
    )
    path: Optional[str] = Field(
        default=None,
        description="Request path that caused the error",
        examples=["/api/deployments"],
    )


class ValidationErrorDetail(BaseModel):
    """Detail for a single request validation error."""

    field: str = Field(..., description="Field that failed validation")
    message: str = Field(..., description="Validation error message")
    type: str = Field(..., description="Type of validation error")


class ValidationErrorResponse(ErrorResponse):
    """Extended error response for request validation errors with field details."""

    error: str = "ValidationError"
    validation_errors: list[ValidationErrorDetail] = Field(
        default_factory=list,
        description="List of field-level validation errors",
    )


class ErrorType:
    """Standard error type codes."""

    VALIDATION_ERROR = "ValidationError"
    INPUT_ERROR = "InputError"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    INTERNAL_ERROR = "InternalError"
    BAD_REQUEST = "BadRequest"
    EXTERNAL_SERVICE_ERROR = "ExternalServiceError"


def create_error_response(
    error: str,
    message: str,
    status_code: int = 500,
    details: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
    path: Optional[str] = None,
) -> dict[str, Any]:
    """Create a standardized error response dictionary.

    Args:
        error: Error type/code
        message: Human-readable error message
        status_code: HTTP status code (not included in response, for logging)
        details: Optional additional context
        request_id: Optional request correlation ID
        path: Optional request path

    Returns:
        Dictionary suitable for JSONResponse content
    """
    response = ErrorResponse(
        error=error,
        message=message,
        details=details,
        request_id=request_id,
        path=path,
    )
    return response.model_dump(exclude_none=True)


def create_validation_error_response(
    message: str,
    errors: list[dict[str, str]],
    request_id: Optional[str] = None,
    path: Optional[str] = None,
) -> dict[str, Any]:
    """Create a validation error response with field-level details.

    Args:
        message: Overall error message
        errors: List of {"field": str, "message": str, "type": str} dicts
        request_id: Optional request correlation ID
        path: Optional request path

    Returns:
        Dictionary suitable for JSONResponse content
    """
    validation_errors = [
        ValidationErrorDetail(
            field=e.get("field", "unknown"),
            message=e.get("message", "Validation failed"),
            type=e.get("type", "value_error"),
        )
        for e in errors
    ]

    response = ValidationErrorResponse(
        error=ErrorType.VALIDATION_ERROR,
        message=message,
        validation_errors=validation_errors,
        request_id=request_id,
        path=path,
    )
    return response.model_dump(exclude_none=True)
