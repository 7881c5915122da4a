"""Adjacency views over resolved relationships.

A relationship is parental when its delete behavior is Cascade. The
referencing (child) entity gets an incoming edge and the referenced (parent)
entity gets the matching outgoing edge, so both directions can be walked
without re-scanning the relationship list. Graphs are rebuilt for every
validation call.
"""

from dataclasses import dataclass, field

from models.errors import InputError
from models.schemas import CascadeDelete, DiagramRelationship, RelationshipRecord
from services.normalizer import normalize

ONE_TO_MANY = {"one-to-many", "1:n", "1-n", "onetomany"}
MANY_TO_ONE = {"many-to-one", "n:1", "n-1", "manytoone"}
ONE_TO_ONE = {"one-to-one", "1:1", "1-1", "onetoone"}


@dataclass(frozen=True)
class GraphEdge:
    other_entity: str
    record: RelationshipRecord


@dataclass
class RelationshipGraphNode:
    """Per-entity adjacency lists, in relationship input order."""

    entity: str
    incoming_parental: list[GraphEdge] = field(default_factory=list)
    incoming_lookup: list[GraphEdge] = field(default_factory=list)
    outgoing_parental: list[GraphEdge] = field(default_factory=list)
    outgoing_lookup: list[GraphEdge] = field(default_factory=list)

    @property
    def parents(self) -> list[str]:
        return [edge.other_entity for edge in self.incoming_parental]

    @property
    def children(self) -> list[str]:
        return [edge.other_entity for edge in self.outgoing_parental]


def build_relationship_graph(
    relationships: list[RelationshipRecord],
) -> dict[str, RelationshipGraphNode]:
    """Build per-entity adjacency views from a flat relationship list.

    Nodes are created lazily the first time an entity is referenced, so dict
    order is first-reference order.
    """
    graph: dict[str, RelationshipGraphNode] = {}

    def node(name: str) -> RelationshipGraphNode:
        if name not in graph:
            graph[name] = RelationshipGraphNode(entity=name)
        return graph[name]

    for record in relationships:
        parent = node(record.referenced_entity)
        child = node(record.referencing_entity)

        if record.is_parental:
            child.incoming_parental.append(GraphEdge(record.referenced_entity, record))
            parent.outgoing_parental.append(GraphEdge(record.referencing_entity, record))
        else:
            child.incoming_lookup.append(GraphEdge(record.referenced_entity, record))
            parent.outgoing_lookup.append(GraphEdge(record.referencing_entity, record))

    return graph


def relationships_from_diagram(
    relationships: list[DiagramRelationship],
    publisher_prefix: str,
) -> list[RelationshipRecord]:
    """Resolve parser relationships into platform-ready records.

    The "one" side of a relationship is the referenced entity. Identifying
    relationships become required cascade (parental) relationships; all others
    become optional lookups.

    Raises:
        InputError: On missing endpoints or many-to-many cardinality
    """
    prefix = normalize(publisher_prefix)
    if not prefix:
        raise InputError("A publisher prefix is required to name relationships")

    records = []
    for index, rel in enumerate(relationships):
        if not rel.from_entity.strip() or not rel.to_entity.strip():
            raise InputError(
                f"Relationship #{index + 1} is missing an endpoint",
                details={"index": index},
            )

        cardinality = rel.cardinality.strip().lower()
        if cardinality in ONE_TO_MANY or cardinality in ONE_TO_ONE:
            referenced, referencing = rel.from_entity, rel.to_entity
        elif cardinality in MANY_TO_ONE:
            referenced, referencing = rel.to_entity, rel.from_entity
        else:
            raise InputError(
                f"Relationship {rel.from_entity} -> {rel.to_entity} has unsupported "
                f"cardinality '{rel.cardinality}'; model many-to-many with an "
                "intersect entity",
                details={"index": index, "cardinality": rel.cardinality},
            )

        referenced_key = normalize(referenced)
        referencing_key = normalize(referencing)
        records.append(
            RelationshipRecord(
                referencing_entity=referencing,
                referenced_entity=referenced,
                schema_name=f"{prefix}_{referenced_key}_{referencing_key}",
                cascade_delete=(
                    CascadeDelete.CASCADE if rel.is_identifying else CascadeDelete.REMOVE_LINK
                ),
                lookup_field_name=f"{prefix}_{referenced_key}id",
                is_required=rel.is_identifying,
            )
        )

    return records
