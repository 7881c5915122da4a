"""Interface to the remote data platform.

The orchestrators issue one call per object and only depend on this protocol;
the transport (Web API, SDK, test double) is supplied by the embedding
application. Implementations raise ObjectNotFoundError when a lookup or
delete target does not exist and any other exception for failures.
"""

from typing import Optional, Protocol, runtime_checkable

from models.schemas import (
    DiagramEntity,
    GlobalChoiceSpec,
    PublisherSpec,
    RelationshipRecord,
    SolutionSpec,
)


@runtime_checkable
class PlatformClient(Protocol):
    # Publisher / solution
    async def find_publisher(self, unique_name: str) -> Optional[str]:
        """Return the id of an existing publisher, or None."""
        ...

    async def create_publisher(self, spec: PublisherSpec) -> str:
        """Create a publisher and return its id."""
        ...

    async def find_solution(self, unique_name: str) -> Optional[str]:
        """Return the id of an existing solution, or None."""
        ...

    async def create_solution(self, spec: SolutionSpec) -> str:
        """Create a solution and return its id."""
        ...

    # Schema objects
    async def create_global_choice(
        self, spec: GlobalChoiceSpec, publisher_prefix: str, solution_unique_name: str
    ) -> str:
        """Create a global choice and return its name."""
        ...

    async def create_entity(
        self, entity: DiagramEntity, publisher_prefix: str, solution_unique_name: str
    ) -> str:
        """Create a custom entity and return its logical name."""
        ...

    async def add_entity_to_solution(
        self, solution_unique_name: str, logical_name: str
    ) -> None:
        ...

    async def create_relationship(
        self, record: RelationshipRecord, solution_unique_name: str
    ) -> str:
        """Create a one-to-many relationship and return its schema name."""
        ...

    # Rollback counterparts
    async def delete_relationship(self, schema_name: str) -> None: ...

    async def delete_entity(self, logical_name: str) -> None: ...

    async def remove_entity_from_solution(
        self, solution_unique_name: str, logical_name: str
    ) -> None: ...

    async def delete_global_choice(self, name: str) -> None: ...

    async def delete_solution(self, solution_id: str) -> None: ...

    async def delete_publisher(self, publisher_id: str) -> None: ...
