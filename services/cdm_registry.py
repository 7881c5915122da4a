"""Registry of standard (CDM) entities.

The registry is an immutable, ordered snapshot read from a JSON data file.
Iteration order is the file order, which the catalog matcher relies on for
deterministic tie-breaking.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from config import get_settings
from models.errors import InputError
from models.schemas import RegistryEntity
from utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_REGISTRY_PATH = (
    Path(__file__).resolve().parent.parent / "models" / "data" / "cdm_entities.json"
)


class CdmRegistry:
    """Read-only, ordered collection of RegistryEntity records."""

    def __init__(self, entities: list[RegistryEntity] | tuple[RegistryEntity, ...]):
        self._entities = tuple(entities)
        self._by_logical_name = {e.logical_name.lower(): e for e in self._entities}

    def __iter__(self) -> Iterator[RegistryEntity]:
        return iter(self._entities)

    def __len__(self) -> int:
        return len(self._entities)

    @property
    def entities(self) -> tuple[RegistryEntity, ...]:
        return self._entities

    def get_by_logical_name(self, logical_name: str) -> Optional[RegistryEntity]:
        """Look up an entry by logical name (case-insensitive)."""
        return self._by_logical_name.get(logical_name.strip().lower())

    def get_by_category(self, category: str) -> list[RegistryEntity]:
        category = category.strip().lower()
        return [e for e in self._entities if e.category.lower() == category]

    def categories(self) -> list[str]:
        """Distinct categories in registry order."""
        return list(dict.fromkeys(e.category for e in self._entities))


def load_registry(path: str | Path | None = None) -> CdmRegistry:
    """Load the registry from a JSON list of entity objects.

    Args:
        path: JSON file to read; defaults to the packaged catalog

    Returns:
        CdmRegistry snapshot

    Raises:
        InputError: If the file is missing or its content is malformed
    """
    registry_path = Path(path) if path else DEFAULT_REGISTRY_PATH

    try:
        raw = json.loads(registry_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise InputError(f"CDM registry file not found: {registry_path}") from e
    except json.JSONDecodeError as e:
        raise InputError(f"CDM registry file is not valid JSON: {e}") from e

    if not isinstance(raw, list):
        raise InputError("CDM registry must be a JSON list of entities")

    entities = []
    seen: set[str] = set()
    for index, item in enumerate(raw):
        try:
            entity = RegistryEntity(
                logical_name=item["logical_name"],
                display_name=item.get("display_name", item["logical_name"]),
                aliases=frozenset(item.get("aliases", [])),
                key_attributes=tuple(item.get("key_attributes", [])),
                category=item.get("category", "core"),
                description=item.get("description", ""),
            )
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise InputError(f"Invalid CDM registry entry at index {index}: {e}") from e

        if entity.logical_name.lower() in seen:
            logger.warning(f"Duplicate CDM registry entry ignored: {entity.logical_name}")
            continue
        seen.add(entity.logical_name.lower())
        entities.append(entity)

    logger.info(
        f"Loaded {len(entities)} CDM entities",
        extra={"registry_path": str(registry_path)},
    )
    return CdmRegistry(entities)


@lru_cache
def get_cdm_registry() -> CdmRegistry:
    """Get the process-wide registry snapshot, loaded on first use."""
    settings = get_settings()
    return load_registry(settings.cdm_registry_path or None)
