"""CDM catalog endpoints: entity detection and registry browsing."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.schemas import DetectionResult, DiagramEntity, RegistryEntity
from routers.dependencies import get_matcher
from services.catalog_matcher import CatalogMatcher
from utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


class DetectRequest(BaseModel):
    entities: list[DiagramEntity] = Field(..., description="Parsed diagram entities")


@router.post("/detect", response_model=DetectionResult)
async def detect_cdm_entities(
    body: DetectRequest,
    matcher: CatalogMatcher = Depends(get_matcher),
):
    """Classify diagram entities as standard (CDM) or custom."""
    return matcher.detect(body.entities)


@router.get("/entities", response_model=list[RegistryEntity])
async def list_cdm_entities(
    category: Optional[str] = None,
    matcher: CatalogMatcher = Depends(get_matcher),
):
    """List registry entities, optionally for one category."""
    return matcher.entities_by_category(category)
