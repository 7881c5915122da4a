"""Structural validation of resolved relationships against platform constraints.

Checks (all always run, so every problem surfaces in one pass):
- Multiple parental relationships: an entity may have at most one incoming
  Cascade relationship
- Circular cascade delete: Cascade relationships must not form a cycle
  (three-color DFS, every independent cycle reported)
- Self-referencing relationships that cascade or are required
- Naming collisions on relationship schema names and lookup field names

Problems are reported as typed dataclasses, never raised. Errors make the
result invalid; warnings never do. The validator does not modify the input:
suggestions describe resolutions and convert_to_lookup() applies one.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Union

from models.schemas import CascadeDelete, RelationshipRecord
from services.relationship_graph import RelationshipGraphNode, build_relationship_graph
from utils.logging import get_logger

logger = get_logger(__name__)


class IssueSeverity(Enum):
    """Severity levels for validation issues."""

    ERROR = "error"  # Blocks deployment
    WARNING = "warning"  # Should be reviewed


class IssueType(Enum):
    """Types of validation issues."""

    MULTIPLE_PARENTAL_RELATIONSHIPS = "MULTIPLE_PARENTAL_RELATIONSHIPS"
    CIRCULAR_CASCADE_DELETE = "CIRCULAR_CASCADE_DELETE"
    SELF_REFERENCING_PARENTAL = "SELF_REFERENCING_PARENTAL"
    SELF_REFERENCING_REQUIRED = "SELF_REFERENCING_REQUIRED"
    DUPLICATE_SCHEMA_NAME = "DUPLICATE_SCHEMA_NAME"
    DUPLICATE_LOOKUP_NAME = "DUPLICATE_LOOKUP_NAME"


class SuggestionType(Enum):
    CONVERT_TO_LOOKUP = "CONVERT_TO_LOOKUP"
    BREAK_CYCLE = "BREAK_CYCLE"
    CONVERT_SELF_REF_TO_LOOKUP = "CONVERT_SELF_REF_TO_LOOKUP"
    MAKE_LOOKUP_OPTIONAL = "MAKE_LOOKUP_OPTIONAL"


class SelfReferenceKind(Enum):
    PARENTAL = "parental"
    REQUIRED = "required"


@dataclass(frozen=True)
class ResolutionOption:
    """One way to resolve a problem.

    convert_to_lookup lists the schema names whose delete behavior should
    become RemoveLink when this option is chosen.
    """

    value: str
    label: str
    description: str
    convert_to_lookup: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "label": self.label,
            "description": self.description,
            "convert_to_lookup": list(self.convert_to_lookup),
        }


# ============================================================================
# Errors
# ============================================================================


@dataclass
class MultipleParentsError:
    entity: str
    parents: list[str]  # Discovery order
    relationships: list[str]  # Schema names of the parental relationships

    type: ClassVar[IssueType] = IssueType.MULTIPLE_PARENTAL_RELATIONSHIPS
    severity: ClassVar[IssueSeverity] = IssueSeverity.ERROR

    @property
    def message(self) -> str:
        return (
            f"Entity '{self.entity}' has {len(self.parents)} parental (cascade delete) "
            f"relationships from {', '.join(self.parents)}; only one is allowed"
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "entity": self.entity,
            "parents": list(self.parents),
            "relationships": list(self.relationships),
        }


@dataclass
class CircularCascadeError:
    cycle: list[str]  # First entity repeated at the end
    relationships: list[str]  # Schema names along the cycle, in order

    type: ClassVar[IssueType] = IssueType.CIRCULAR_CASCADE_DELETE
    severity: ClassVar[IssueSeverity] = IssueSeverity.ERROR

    def format_path(self) -> str:
        return " -> ".join(self.cycle)

    @property
    def message(self) -> str:
        return f"Circular cascade delete: {self.format_path()}"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "cycle": list(self.cycle),
            "relationships": list(self.relationships),
        }


# ============================================================================
# Warnings
# ============================================================================


@dataclass
class SelfReferenceWarning:
    entity: str
    kind: SelfReferenceKind
    schema_name: str

    severity: ClassVar[IssueSeverity] = IssueSeverity.WARNING

    @property
    def type(self) -> IssueType:
        if self.kind == SelfReferenceKind.PARENTAL:
            return IssueType.SELF_REFERENCING_PARENTAL
        return IssueType.SELF_REFERENCING_REQUIRED

    @property
    def message(self) -> str:
        if self.kind == SelfReferenceKind.PARENTAL:
            return (
                f"Self-referencing relationship '{self.schema_name}' on '{self.entity}' "
                "cascades deletes through the whole hierarchy"
            )
        return (
            f"Self-referencing lookup '{self.schema_name}' on '{self.entity}' is "
            "required, so the first record can never be created"
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "entity": self.entity,
            "kind": self.kind.value,
            "schema_name": self.schema_name,
        }


@dataclass
class DuplicateSchemaNameWarning:
    schema_name: str
    count: int
    entities: list[str] = field(default_factory=list)

    type: ClassVar[IssueType] = IssueType.DUPLICATE_SCHEMA_NAME
    severity: ClassVar[IssueSeverity] = IssueSeverity.WARNING

    @property
    def message(self) -> str:
        return f"Relationship schema name '{self.schema_name}' is used {self.count} times"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "schema_name": self.schema_name,
            "count": self.count,
            "entities": list(self.entities),
        }


@dataclass
class DuplicateLookupNameWarning:
    entity: str
    lookup_field_name: str
    count: int

    type: ClassVar[IssueType] = IssueType.DUPLICATE_LOOKUP_NAME
    severity: ClassVar[IssueSeverity] = IssueSeverity.WARNING

    @property
    def message(self) -> str:
        return (
            f"Lookup field '{self.lookup_field_name}' is defined {self.count} times "
            f"on '{self.entity}'"
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "entity": self.entity,
            "lookup_field_name": self.lookup_field_name,
            "count": self.count,
        }


# ============================================================================
# Suggestions
# ============================================================================


@dataclass
class ChooseParentSuggestion:
    entity: str
    options: list[ResolutionOption]

    type: ClassVar[SuggestionType] = SuggestionType.CONVERT_TO_LOOKUP

    @property
    def message(self) -> str:
        return f"Choose which relationship stays parental for '{self.entity}'"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "entity": self.entity,
            "options": [o.to_dict() for o in self.options],
        }


@dataclass
class BreakCycleSuggestion:
    cycle: list[str]
    options: list[ResolutionOption]

    type: ClassVar[SuggestionType] = SuggestionType.BREAK_CYCLE

    @property
    def message(self) -> str:
        return "Convert one relationship in the cycle from cascade delete to lookup"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "cycle": list(self.cycle),
            "options": [o.to_dict() for o in self.options],
        }


@dataclass
class RelaxCascadeSuggestion:
    entity: str
    schema_name: str

    type: ClassVar[SuggestionType] = SuggestionType.CONVERT_SELF_REF_TO_LOOKUP

    @property
    def message(self) -> str:
        return (
            f"Set the delete behavior of '{self.schema_name}' to "
            f"{CascadeDelete.REMOVE_LINK.value}"
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "entity": self.entity,
            "schema_name": self.schema_name,
            "cascade_delete": CascadeDelete.REMOVE_LINK.value,
        }


@dataclass
class OptionalLookupSuggestion:
    entity: str
    schema_name: str
    lookup_field_name: str

    type: ClassVar[SuggestionType] = SuggestionType.MAKE_LOOKUP_OPTIONAL

    @property
    def message(self) -> str:
        return f"Make lookup '{self.lookup_field_name}' on '{self.entity}' optional"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "entity": self.entity,
            "schema_name": self.schema_name,
            "lookup_field_name": self.lookup_field_name,
        }


RelationshipError = Union[MultipleParentsError, CircularCascadeError]
RelationshipWarning = Union[
    SelfReferenceWarning, DuplicateSchemaNameWarning, DuplicateLookupNameWarning
]
Suggestion = Union[
    ChooseParentSuggestion,
    BreakCycleSuggestion,
    RelaxCascadeSuggestion,
    OptionalLookupSuggestion,
]


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[RelationshipError] = field(default_factory=list)
    warnings: list[RelationshipWarning] = field(default_factory=list)
    suggestions: list[Suggestion] = field(default_factory=list)
    resolved_relationships: list[RelationshipRecord] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        total = len(self.errors) + len(self.warnings)
        if self.is_valid:
            message = (
                "All relationships are valid"
                if not self.warnings
                else f"Relationships are valid with {len(self.warnings)} warning(s)"
            )
        else:
            message = f"Found {len(self.errors)} error(s) that must be resolved before deployment"
        return {
            "total_issues": total,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "suggestions": len(self.suggestions),
            "status": "VALID" if self.is_valid else "INVALID",
            "message": message,
        }

    def errors_of(self, issue_type: IssueType) -> list[RelationshipError]:
        return [e for e in self.errors if e.type == issue_type]

    def warnings_of(self, issue_type: IssueType) -> list[RelationshipWarning]:
        return [w for w in self.warnings if w.type == issue_type]

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "resolved_relationships": [
                r.model_dump(mode="json") for r in self.resolved_relationships
            ],
            "summary": self.summary,
        }


class RelationshipValidator:
    """Validate a resolved relationship set before deployment."""

    WHITE, GRAY, BLACK = 0, 1, 2

    def validate(
        self,
        relationships: list[RelationshipRecord],
        entities: Optional[list[str]] = None,
    ) -> ValidationResult:
        """Run every structural check over a freshly built graph.

        Args:
            relationships: Resolved relationships (never modified)
            entities: Optional entity names; cycle search starts from these in
                order, then from any remaining graph node

        Returns:
            ValidationResult
        """
        graph = build_relationship_graph(relationships)
        result = ValidationResult(
            is_valid=True, resolved_relationships=list(relationships)
        )

        self.check_multiple_parents(graph, result)
        self.check_cycles(graph, result, root_order=entities)
        self.check_self_references(relationships, result)
        self.check_naming(relationships, result)

        result.is_valid = not result.errors

        logger.info(
            f"Relationship validation: {result.summary['status']}",
            extra={
                "relationships": len(relationships),
                "errors": len(result.errors),
                "warnings": len(result.warnings),
            },
        )
        return result

    def check_multiple_parents(
        self, graph: dict[str, RelationshipGraphNode], result: ValidationResult
    ) -> None:
        for name, node in graph.items():
            if len(node.incoming_parental) <= 1:
                continue

            parents = node.parents
            schema_names = [edge.record.schema_name for edge in node.incoming_parental]
            result.errors.append(
                MultipleParentsError(entity=name, parents=parents, relationships=schema_names)
            )

            options = [
                ResolutionOption(
                    value=edge.other_entity,
                    label=f"Keep {edge.other_entity} as parent",
                    description=(
                        f"{edge.other_entity} keeps cascade delete; the other "
                        "relationships become lookups"
                    ),
                    convert_to_lookup=tuple(
                        s for s in schema_names if s != edge.record.schema_name
                    ),
                )
                for edge in node.incoming_parental
            ]
            options.append(
                ResolutionOption(
                    value="none",
                    label="No parental relationship",
                    description=f"All relationships to {name} become lookups",
                    convert_to_lookup=tuple(schema_names),
                )
            )
            result.suggestions.append(ChooseParentSuggestion(entity=name, options=options))

    def check_cycles(
        self,
        graph: dict[str, RelationshipGraphNode],
        result: ValidationResult,
        root_order: Optional[list[str]] = None,
    ) -> None:
        """Three-color DFS over parental edges (parent -> child).

        A back edge to a gray node closes a cycle. The search restarts from
        every unvisited node, so independent cycles are all found.
        """
        color = {name: self.WHITE for name in graph}
        roots = list(dict.fromkeys(n for n in (root_order or []) if n in graph))
        preferred = set(roots)
        roots += [n for n in graph if n not in preferred]

        for root in roots:
            if color[root] != self.WHITE:
                continue

            color[root] = self.GRAY
            path = [root]
            path_edges: list[str] = []  # path_edges[i] links path[i] to path[i + 1]
            stack = [iter(graph[root].outgoing_parental)]

            while stack:
                edge = next(stack[-1], None)
                if edge is None:
                    color[path.pop()] = self.BLACK
                    if path_edges:
                        path_edges.pop()
                    stack.pop()
                    continue

                child = edge.other_entity
                # Self-references are reported by check_self_references
                if child == path[-1]:
                    continue

                if color[child] == self.GRAY:
                    start = path.index(child)
                    cycle = path[start:] + [child]
                    edges = path_edges[start:] + [edge.record.schema_name]
                    self._report_cycle(cycle, edges, result)
                elif color[child] == self.WHITE:
                    color[child] = self.GRAY
                    path.append(child)
                    path_edges.append(edge.record.schema_name)
                    stack.append(iter(graph[child].outgoing_parental))

    def _report_cycle(
        self, cycle: list[str], schema_names: list[str], result: ValidationResult
    ) -> None:
        error = CircularCascadeError(cycle=cycle, relationships=schema_names)
        result.errors.append(error)
        logger.debug(f"Cascade cycle found: {error.format_path()}")

        options = [
            ResolutionOption(
                value=schema_name,
                label=f"Convert {cycle[i]} -> {cycle[i + 1]} to lookup",
                description=f"'{schema_name}' stops cascading deletes",
                convert_to_lookup=(schema_name,),
            )
            for i, schema_name in enumerate(schema_names)
        ]
        result.suggestions.append(BreakCycleSuggestion(cycle=list(cycle), options=options))

    def check_self_references(
        self, relationships: list[RelationshipRecord], result: ValidationResult
    ) -> None:
        for record in relationships:
            if not record.is_self_referencing:
                continue
            entity = record.referencing_entity

            if record.is_parental:
                result.warnings.append(
                    SelfReferenceWarning(
                        entity=entity,
                        kind=SelfReferenceKind.PARENTAL,
                        schema_name=record.schema_name,
                    )
                )
                result.suggestions.append(
                    RelaxCascadeSuggestion(entity=entity, schema_name=record.schema_name)
                )

            if record.is_required:
                result.warnings.append(
                    SelfReferenceWarning(
                        entity=entity,
                        kind=SelfReferenceKind.REQUIRED,
                        schema_name=record.schema_name,
                    )
                )
                result.suggestions.append(
                    OptionalLookupSuggestion(
                        entity=entity,
                        schema_name=record.schema_name,
                        lookup_field_name=record.lookup_field_name,
                    )
                )

    def check_naming(
        self, relationships: list[RelationshipRecord], result: ValidationResult
    ) -> None:
        # Schema and lookup names are case-insensitive on the platform
        schema_counts = Counter(r.schema_name.lower() for r in relationships)
        reported_schemas: set[str] = set()
        for record in relationships:
            key = record.schema_name.lower()
            if schema_counts[key] > 1 and key not in reported_schemas:
                reported_schemas.add(key)
                entities = list(
                    dict.fromkeys(
                        r.referencing_entity
                        for r in relationships
                        if r.schema_name.lower() == key
                    )
                )
                result.warnings.append(
                    DuplicateSchemaNameWarning(
                        schema_name=record.schema_name,
                        count=schema_counts[key],
                        entities=entities,
                    )
                )

        lookup_counts = Counter(
            (r.referencing_entity, r.lookup_field_name.lower()) for r in relationships
        )
        reported_lookups: set[tuple[str, str]] = set()
        for record in relationships:
            key = (record.referencing_entity, record.lookup_field_name.lower())
            if lookup_counts[key] > 1 and key not in reported_lookups:
                reported_lookups.add(key)
                result.warnings.append(
                    DuplicateLookupNameWarning(
                        entity=record.referencing_entity,
                        lookup_field_name=record.lookup_field_name,
                        count=lookup_counts[key],
                    )
                )


def build_interactive_prompts(result: ValidationResult) -> list[dict]:
    """Turn blocking errors into choice prompts for an interactive resolver."""
    prompts = []
    for suggestion in result.suggestions:
        if isinstance(suggestion, ChooseParentSuggestion):
            prompts.append(
                {
                    "id": f"multi_parent_{suggestion.entity}",
                    "type": "choice",
                    "issue_type": IssueType.MULTIPLE_PARENTAL_RELATIONSHIPS.value,
                    "question": (
                        f"'{suggestion.entity}' can only have one parental relationship. "
                        "Which one should cascade deletes?"
                    ),
                    "options": [o.to_dict() for o in suggestion.options],
                }
            )
        elif isinstance(suggestion, BreakCycleSuggestion):
            prompts.append(
                {
                    "id": f"cycle_{'_'.join(suggestion.cycle[:-1])}",
                    "type": "choice",
                    "issue_type": IssueType.CIRCULAR_CASCADE_DELETE.value,
                    "question": (
                        f"Cascade deletes loop through {' -> '.join(suggestion.cycle)}. "
                        "Which relationship should become a lookup?"
                    ),
                    "options": [o.to_dict() for o in suggestion.options],
                }
            )
    return prompts


def convert_to_lookup(
    relationships: list[RelationshipRecord], schema_names: list[str]
) -> list[RelationshipRecord]:
    """Return a copy of relationships with the named ones set to RemoveLink."""
    targets = {name.lower() for name in schema_names}
    return [
        record.model_copy(update={"cascade_delete": CascadeDelete.REMOVE_LINK})
        if record.schema_name.lower() in targets
        else record
        for record in relationships
    ]


def apply_resolution(
    relationships: list[RelationshipRecord],
    entity: str,
    keep_parent: Optional[str] = None,
) -> list[RelationshipRecord]:
    """Keep one parental relationship into entity and turn the rest into lookups.

    keep_parent None (or "none") converts every incoming parental relationship.
    """
    entity_key = entity.lower()
    keep_key = keep_parent.lower() if keep_parent and keep_parent != "none" else None
    schema_names = [
        record.schema_name
        for record in relationships
        if record.is_parental
        and record.referencing_entity.lower() == entity_key
        and record.referenced_entity.lower() != keep_key
    ]
    return convert_to_lookup(relationships, schema_names)


def get_relationship_validator() -> RelationshipValidator:
    """Get a relationship validator instance."""
    return RelationshipValidator()
