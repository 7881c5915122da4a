"""FastAPI application for ERD-to-platform schema deployment.

Features:
- CDM catalog detection and relationship validation
- Streaming staged deployments with persisted history
- Background rollbacks with pollable status
- Standardized error responses and structured startup logging

The platform client is not built here: the embedding application assigns an
object implementing services.platform_client.PlatformClient to
app.state.platform_client. Deployment and rollback endpoints return 503 until
it is set.
"""

import platform
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import State
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from db.redis import close_redis, init_redis
from middleware.request_id import RequestIDMiddleware
from models.errors import (
    ErdDeployError,
    ErrorType,
    create_error_response,
    create_validation_error_response,
)
from routers import cdm, deployments, rollback, validation
from services.catalog_matcher import CatalogMatcher
from services.cdm_registry import get_cdm_registry
from services.deployment_history import InMemoryDeploymentHistory, RedisDeploymentHistory
from services.relationship_validator import RelationshipValidator
from services.rollback_status_tracker import RollbackStatusTracker
from utils.cache import TTLCache
from utils.logging import configure_logging, get_log_context, get_logger

APP_VERSION = "0.1.0"
APP_NAME = "ERD Deploy API"

logger = get_logger(__name__)


def get_request_id(request: Request) -> str | None:
    """Extract request ID from request state or headers."""
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get("X-Request-ID")


def init_services(state: State, settings: Settings, redis_client=None) -> None:
    """Build the shared services and attach them to the application state."""
    state.settings = settings
    state.cache = TTLCache(
        default_ttl=settings.registry_cache_ttl,
        max_entries=settings.registry_cache_max_entries,
    )
    state.matcher = CatalogMatcher(get_cdm_registry(), settings, cache=state.cache)
    state.validator = RelationshipValidator()
    if redis_client is not None:
        state.history = RedisDeploymentHistory(
            redis_client,
            ttl=settings.deployment_history_ttl,
            max_entries=settings.deployment_history_max_entries,
        )
    else:
        state.history = InMemoryDeploymentHistory(settings.deployment_history_max_entries)
    state.rollback_tracker = RollbackStatusTracker(
        retention_seconds=settings.rollback_status_retention,
        cleanup_interval=settings.rollback_cleanup_interval,
    )
    if not hasattr(state, "platform_client"):
        state.platform_client = None
    state.deployment_orchestrator = None
    state.rollback_orchestrator = None


def log_startup_banner(settings: Settings, state: State) -> None:
    logger.info(
        "Application startup complete",
        extra={
            "event": "startup",
            "app_name": APP_NAME,
            "app_version": APP_VERSION,
            "python_version": platform.python_version(),
            "history_backend": settings.deployment_history_backend,
            "cdm_entities": len(state.matcher.registry),
            "platform_client": state.platform_client is not None,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: build services, start background cleanup."""
    settings = get_settings()
    configure_logging(settings.log_level, json_format=not settings.debug)

    logger.info("=" * 60)
    logger.info(f"{APP_NAME} v{APP_VERSION} starting up...")

    redis_client = None
    if settings.deployment_history_backend == "redis":
        redis_client = await init_redis()

    init_services(app.state, settings, redis_client)
    await app.state.rollback_tracker.start()
    log_startup_banner(settings, app.state)
    logger.info("=" * 60)

    yield

    logger.info("Shutting down gracefully...")
    if app.state.deployment_orchestrator is not None:
        await app.state.deployment_orchestrator.wait_for_all()
    if app.state.rollback_orchestrator is not None:
        await app.state.rollback_orchestrator.wait_for_all()
    await app.state.rollback_tracker.stop()
    if redis_client is not None:
        await close_redis()
    logger.info("Graceful shutdown complete")


app = FastAPI(
    title=APP_NAME,
    description="Deploys entity-relationship diagrams as platform schemas",
    version=APP_VERSION,
    lifespan=lifespan,
)


app.add_middleware(RequestIDMiddleware)


# =============================================================================
# Standardized Exception Handlers
# =============================================================================


@app.exception_handler(ErdDeployError)
async def domain_exception_handler(request: Request, exc: ErdDeployError) -> JSONResponse:
    """Render domain errors with their own status code and error type."""
    response = create_error_response(
        error=exc.error_type,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details or None,
        request_id=get_request_id(request),
        path=str(request.url.path),
    )

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}",
        extra={**get_log_context(), "status_code": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content=response)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request body validation errors with field-level details."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error.get("loc", []))
        errors.append(
            {
                "field": field,
                "message": error.get("msg", "Validation error"),
                "type": error.get("type", "value_error"),
            }
        )

    response = create_validation_error_response(
        message="Request validation failed",
        errors=errors,
        request_id=get_request_id(request),
        path=str(request.url.path),
    )

    logger.warning(
        f"Validation error on {request.method} {request.url.path}: "
        f"{len(errors)} error(s)"
    )

    return JSONResponse(status_code=422, content=response)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    error_type_map = {
        400: ErrorType.BAD_REQUEST,
        404: ErrorType.NOT_FOUND,
        409: ErrorType.CONFLICT,
        503: ErrorType.SERVICE_UNAVAILABLE,
    }

    error_type = error_type_map.get(exc.status_code, ErrorType.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    response = create_error_response(
        error=error_type,
        message=message,
        status_code=exc.status_code,
        request_id=get_request_id(request),
        path=str(request.url.path),
    )

    return JSONResponse(status_code=exc.status_code, content=response)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        f"Unhandled exception on {request.method} {request.url.path}: "
        f"{type(exc).__name__}: {exc}"
    )

    # Don't expose internal error details to clients
    response = create_error_response(
        error=ErrorType.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        request_id=get_request_id(request),
        path=str(request.url.path),
    )

    return JSONResponse(status_code=500, content=response)


# =============================================================================
# Routers
# =============================================================================

app.include_router(cdm.router, prefix="/api/cdm", tags=["CDM"])
app.include_router(validation.router, prefix="/api/validation", tags=["Validation"])
app.include_router(deployments.router, prefix="/api/deployments", tags=["Deployments"])
app.include_router(rollback.router, prefix="/api/rollback", tags=["Rollback"])


# =============================================================================
# Health & Status Endpoints
# =============================================================================


@app.get("/health")
async def health_check(request: Request):
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "platform_client": getattr(request.app.state, "platform_client", None) is not None,
    }


@app.get("/")
async def root():
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "docs": "/docs",
    }
