"""Rollback endpoints.

A rollback runs in the background: POST returns 202 with the rollback id and
clients poll the status endpoint until the entry is completed or failed.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from models.schemas import RollbackEligibility, RollbackOptions, RollbackStartResponse
from routers.dependencies import get_rollback_orchestrator
from services.rollback_orchestrator import RollbackOrchestrator
from utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("/{deployment_id}/eligibility", response_model=RollbackEligibility)
async def get_rollback_eligibility(
    deployment_id: str,
    orchestrator: RollbackOrchestrator = Depends(get_rollback_orchestrator),
):
    return await orchestrator.can_rollback(deployment_id)


@router.post("/{deployment_id}", status_code=202, response_model=RollbackStartResponse)
async def start_rollback(
    deployment_id: str,
    options: Optional[RollbackOptions] = None,
    orchestrator: RollbackOrchestrator = Depends(get_rollback_orchestrator),
):
    """Start rolling back a deployment; omitted options mean a complete rollback."""
    rollback_id = await orchestrator.start_rollback(deployment_id, options)
    return RollbackStartResponse(
        rollback_id=rollback_id,
        deployment_id=deployment_id,
        status_url=f"/api/rollback/status/{rollback_id}",
    )


@router.get("/status/{rollback_id}")
async def get_rollback_status(
    rollback_id: str,
    orchestrator: RollbackOrchestrator = Depends(get_rollback_orchestrator),
):
    entry = await orchestrator.get_rollback_status(rollback_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Rollback {rollback_id} not found")
    return entry.to_dict()
