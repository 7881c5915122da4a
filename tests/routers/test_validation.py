"""Tests for the validation router."""

import pytest

from models.errors import InputError
from models.schemas import CascadeDelete, DiagramRelationship
from routers.validation import (
    ResolveRequest,
    ValidateRelationshipsRequest,
    resolve_relationships,
    validate_relationships,
)
from tests.factories import RelationshipFactory


class TestValidateRelationships:
    """Tests for POST /relationships."""

    @pytest.mark.asyncio
    async def test_valid_relationships(self, validator):
        body = ValidateRelationshipsRequest(
            relationships=[RelationshipFactory.parental("Spaceship", "Voyage")]
        )

        response = await validate_relationships(body, validator=validator)

        assert response["is_valid"] is True
        assert response["summary"]["status"] == "VALID"
        assert response["prompts"] == []

    @pytest.mark.asyncio
    async def test_multi_parent_returns_prompt(self, validator):
        body = ValidateRelationshipsRequest(
            relationships=[
                RelationshipFactory.parental("Spaceship", "Voyage"),
                RelationshipFactory.parental("Harbor", "Voyage"),
            ]
        )

        response = await validate_relationships(body, validator=validator)

        assert response["is_valid"] is False
        assert len(response["prompts"]) == 1
        prompt = response["prompts"][0]
        assert prompt["issue_type"] == "MULTIPLE_PARENTAL_RELATIONSHIPS"
        assert prompt["type"] == "choice"

    @pytest.mark.asyncio
    async def test_converts_diagram_relationships(self, validator):
        body = ValidateRelationshipsRequest(
            diagram_relationships=[
                DiagramRelationship(fromEntity="Spaceship", toEntity="Voyage", isIdentifying=True)
            ],
            publisher_prefix="cmmd",
        )

        response = await validate_relationships(body, validator=validator)

        assert response["is_valid"] is True
        resolved = response["resolved_relationships"]
        assert resolved[0]["schema_name"] == "cmmd_spaceship_voyage"
        assert resolved[0]["referenced_entity"] == "Spaceship"

    @pytest.mark.asyncio
    async def test_many_to_many_is_rejected(self, validator):
        body = ValidateRelationshipsRequest(
            diagram_relationships=[
                DiagramRelationship(
                    fromEntity="Crew", toEntity="Voyage", cardinality="many-to-many"
                )
            ],
            publisher_prefix="cmmd",
        )

        with pytest.raises(InputError, match="many-to-many"):
            await validate_relationships(body, validator=validator)


class TestResolveRelationships:
    """Tests for POST /resolve."""

    @pytest.mark.asyncio
    async def test_keep_one_parent(self):
        body = ResolveRequest(
            relationships=[
                RelationshipFactory.parental("Spaceship", "Voyage"),
                RelationshipFactory.parental("Harbor", "Voyage"),
            ],
            entity="Voyage",
            keep_parent="Spaceship",
        )

        resolved = await resolve_relationships(body)

        by_parent = {r.referenced_entity: r.cascade_delete for r in resolved}
        assert by_parent == {
            "Spaceship": CascadeDelete.CASCADE,
            "Harbor": CascadeDelete.REMOVE_LINK,
        }

    @pytest.mark.asyncio
    async def test_convert_named_relationships(self):
        relationships = RelationshipFactory.cycle(["Spaceship", "Voyage"])
        body = ResolveRequest(
            relationships=relationships,
            convert_to_lookup=[relationships[1].schema_name],
        )

        resolved = await resolve_relationships(body)

        assert [r.cascade_delete for r in resolved] == [
            CascadeDelete.CASCADE,
            CascadeDelete.REMOVE_LINK,
        ]
        # Input is left untouched
        assert relationships[1].cascade_delete == CascadeDelete.CASCADE
