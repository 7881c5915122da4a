"""Deployment endpoints.

POST /api/deployments streams progress as newline-delimited JSON; the last
line is the final event carrying the deployment record.
"""

from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from models.errors import DeploymentNotFoundError
from models.schemas import DeploymentRecord, DeploymentRequest, ProgressEvent
from routers.dependencies import get_deployment_orchestrator, get_history
from services.deployment_history import DeploymentHistory
from services.deployment_orchestrator import DeploymentOrchestrator
from utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


async def ndjson_events(events: AsyncIterator[ProgressEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.model_dump_json(exclude_none=True) + "\n"


@router.post("")
async def create_deployment(
    body: DeploymentRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_deployment_orchestrator),
):
    """Deploy a resolved diagram, streaming progress events."""
    logger.info(
        f"Deployment requested for solution {body.solution_name}",
        extra={"entities": len(body.entities), "relationships": len(body.relationships)},
    )
    return StreamingResponse(
        ndjson_events(orchestrator.stream_detached(body)),
        media_type="application/x-ndjson",
    )


@router.get("", response_model=list[DeploymentRecord])
async def list_deployments(
    limit: int = Query(20, ge=1, le=100),
    history: DeploymentHistory = Depends(get_history),
):
    """Recent deployments, newest first."""
    return await history.list(limit)


@router.get("/{deployment_id}", response_model=DeploymentRecord)
async def get_deployment(
    deployment_id: str,
    history: DeploymentHistory = Depends(get_history),
):
    record = await history.get(deployment_id)
    if record is None:
        raise DeploymentNotFoundError(deployment_id)
    return record
