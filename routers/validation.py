"""Relationship validation endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.schemas import DiagramRelationship, RelationshipRecord
from routers.dependencies import get_validator
from services.relationship_graph import relationships_from_diagram
from services.relationship_validator import (
    RelationshipValidator,
    apply_resolution,
    build_interactive_prompts,
    convert_to_lookup,
)
from utils.logging import get_logger

router = APIRouter()
logger = get_logger(__name__)


class ValidateRelationshipsRequest(BaseModel):
    relationships: list[RelationshipRecord] = Field(default_factory=list)
    diagram_relationships: list[DiagramRelationship] = Field(
        default_factory=list,
        description="Raw diagram relationships, converted with publisher_prefix",
    )
    publisher_prefix: Optional[str] = None
    entities: Optional[list[str]] = Field(
        None, description="Entity names in diagram order"
    )


class ResolveRequest(BaseModel):
    relationships: list[RelationshipRecord]
    entity: Optional[str] = Field(
        None, description="Entity whose parental relationships are being resolved"
    )
    keep_parent: Optional[str] = Field(
        None, description="Parent to keep; omit or 'none' to convert all"
    )
    convert_to_lookup: list[str] = Field(
        default_factory=list,
        description="Schema names to convert to lookups (resolution option payload)",
    )


@router.post("/relationships")
async def validate_relationships(
    body: ValidateRelationshipsRequest,
    validator: RelationshipValidator = Depends(get_validator),
):
    """Validate relationships and return interactive prompts for blocking errors."""
    relationships = list(body.relationships)
    if body.diagram_relationships:
        relationships += relationships_from_diagram(
            body.diagram_relationships, body.publisher_prefix or ""
        )

    result = validator.validate(relationships, body.entities)
    response = result.to_dict()
    response["prompts"] = build_interactive_prompts(result)
    return response


@router.post("/resolve", response_model=list[RelationshipRecord])
async def resolve_relationships(body: ResolveRequest):
    """Apply a chosen resolution and return the updated relationship list."""
    relationships = body.relationships
    if body.entity:
        relationships = apply_resolution(relationships, body.entity, body.keep_parent)
    if body.convert_to_lookup:
        relationships = convert_to_lookup(relationships, body.convert_to_lookup)

    logger.info(
        "Applied relationship resolution",
        extra={"entity": body.entity, "converted": len(body.convert_to_lookup)},
    )
    return relationships
