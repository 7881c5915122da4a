"""Request-scoped access to the services built in the application lifespan."""

from fastapi import HTTPException, Request

from services.catalog_matcher import CatalogMatcher
from services.deployment_history import DeploymentHistory
from services.deployment_orchestrator import DeploymentOrchestrator
from services.platform_client import PlatformClient
from services.relationship_validator import RelationshipValidator
from services.rollback_orchestrator import RollbackOrchestrator


def get_matcher(request: Request) -> CatalogMatcher:
    return request.app.state.matcher


def get_validator(request: Request) -> RelationshipValidator:
    return request.app.state.validator


def get_history(request: Request) -> DeploymentHistory:
    return request.app.state.history


def get_platform_client(request: Request) -> PlatformClient:
    """The platform client is supplied by the embedding application."""
    client = getattr(request.app.state, "platform_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="No platform client is configured")
    return client


def get_deployment_orchestrator(request: Request) -> DeploymentOrchestrator:
    # One instance per application so detached pipelines stay referenced
    orchestrator = getattr(request.app.state, "deployment_orchestrator", None)
    if orchestrator is None:
        client = get_platform_client(request)
        orchestrator = DeploymentOrchestrator(
            client,
            request.app.state.history,
            validator=request.app.state.validator,
            settings=request.app.state.settings,
        )
        request.app.state.deployment_orchestrator = orchestrator
    return orchestrator


def get_rollback_orchestrator(request: Request) -> RollbackOrchestrator:
    # One instance per application so running rollbacks stay referenced
    orchestrator = getattr(request.app.state, "rollback_orchestrator", None)
    if orchestrator is None:
        client = get_platform_client(request)
        orchestrator = RollbackOrchestrator(
            client,
            request.app.state.history,
            request.app.state.rollback_tracker,
            settings=request.app.state.settings,
        )
        request.app.state.rollback_orchestrator = orchestrator
    return orchestrator
