"""Classify diagram entities against the standard (CDM) entity catalog.

Matching runs in three tiers per entity, stopping at the first hit:
1. Exact - normalized name equals a registry logical or display name (confidence 1.0)
2. Alias - normalized name equals a registry alias (fixed confidence, default 0.9)
3. Fuzzy - best rapidfuzz ratio against registry logical/display names that
   clears FUZZY_MATCH_THRESHOLD (confidence = score, capped below the alias
   confidence so a fuzzy hit never outranks an alias hit)

Entities with no hit are custom and never appear in the match list. Within a
tier the first registry entry in registry order wins.

Thresholds are configurable via environment variables:
- FUZZY_MATCH_THRESHOLD: minimum fuzzy similarity (default: 0.6)
- ALIAS_MATCH_CONFIDENCE: confidence reported for alias hits (default: 0.9)
"""

from dataclasses import dataclass
from statistics import mean
from typing import Optional

from rapidfuzz import fuzz

from config import Settings, get_settings
from models.schemas import (
    ConfidenceLevel,
    DetectionResult,
    DetectionSummary,
    DiagramEntity,
    MatchResult,
    MatchType,
    Recommendation,
    RegistryEntity,
)
from services.cdm_registry import CdmRegistry, get_cdm_registry
from services.normalizer import normalize
from utils.cache import TTLCache
from utils.logging import get_logger

logger = get_logger(__name__)

EXACT_CONFIDENCE = 1.0
HIGH_CONFIDENCE_LEVEL = 0.9
MEDIUM_CONFIDENCE_LEVEL = 0.7
# Gap kept between the alias confidence and the highest fuzzy confidence
FUZZY_CONFIDENCE_MARGIN = 0.01


@dataclass(frozen=True)
class _Classification:
    """Tier outcome for one normalized name."""

    registry_entity: RegistryEntity
    match_type: MatchType
    confidence: float


def attribute_overlap(entity: DiagramEntity, registry_entity: RegistryEntity) -> float:
    """Share of the registry entity's key attributes present on the diagram entity."""
    if not registry_entity.key_attributes:
        return 0.0
    diagram_attrs = {normalize(a.name) for a in entity.attributes}
    hits = sum(1 for key in registry_entity.key_attributes if normalize(key) in diagram_attrs)
    return round(hits / len(registry_entity.key_attributes), 4)


def confidence_level(confidences: list[float]) -> ConfidenceLevel:
    """Coarse label for the mean confidence of a set of matches."""
    if not confidences:
        return ConfidenceLevel.NONE
    average = mean(confidences)
    if average >= HIGH_CONFIDENCE_LEVEL:
        return ConfidenceLevel.HIGH
    if average >= MEDIUM_CONFIDENCE_LEVEL:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


class CatalogMatcher:
    """Exact/alias/fuzzy classifier over a registry snapshot.

    The matcher holds no mutable state besides the optional injected cache,
    which memoizes per-name classifications for the lifetime of the registry
    snapshot.
    """

    def __init__(
        self,
        registry: Optional[CdmRegistry] = None,
        settings: Optional[Settings] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.registry = registry if registry is not None else get_cdm_registry()
        settings = settings or get_settings()
        self.cache = cache

        self.alias_confidence = settings.alias_match_confidence
        # Convert 0-1 scale to 0-100 for rapidfuzz
        self.fuzzy_threshold = int(round(settings.fuzzy_match_threshold * 100))
        self.max_fuzzy_confidence = round(
            self.alias_confidence - FUZZY_CONFIDENCE_MARGIN, 4
        )
        self.cache_ttl = settings.registry_cache_ttl

        # Normalized lookup keys, precomputed once per registry snapshot
        self._name_keys = [
            (entry, {normalize(entry.logical_name), normalize(entry.display_name)} - {""})
            for entry in self.registry
        ]
        self._alias_keys = [
            (entry, {normalize(alias) for alias in entry.aliases} - {""})
            for entry in self.registry
        ]

    def detect(self, entities: list[DiagramEntity]) -> DetectionResult:
        """Classify every diagram entity and summarize the outcome.

        Args:
            entities: Parsed diagram entities

        Returns:
            DetectionResult with summary, matches, custom entities and
            recommendations
        """
        matches: list[MatchResult] = []
        custom: list[DiagramEntity] = []

        for entity in entities:
            classification = self.classify(entity.name)
            if classification is None:
                custom.append(entity)
                continue
            matches.append(
                MatchResult(
                    original_entity=entity,
                    registry_entity=classification.registry_entity,
                    match_type=classification.match_type,
                    confidence=classification.confidence,
                    attribute_overlap=attribute_overlap(
                        entity, classification.registry_entity
                    ),
                )
            )

        summary = DetectionSummary(
            total_entities=len(entities),
            cdm_matches=len(matches),
            custom_entities=len(custom),
            confidence_level=confidence_level([m.confidence for m in matches]),
        )

        logger.info(
            f"CDM detection: {summary.cdm_matches}/{summary.total_entities} matched",
            extra={
                "cdm_matches": summary.cdm_matches,
                "custom_entities": summary.custom_entities,
                "confidence_level": summary.confidence_level.value,
            },
        )

        return DetectionResult(
            summary=summary,
            matches=matches,
            custom_entities=custom,
            recommendations=build_recommendations(matches),
        )

    def classify(self, name: str) -> Optional[_Classification]:
        """Run the three matching tiers for a single entity name."""
        normalized = normalize(name)
        if not normalized:
            return None

        cache_key = ("cdm_classification", id(self.registry), normalized)
        if self.cache is not None and cache_key in self.cache:
            return self.cache.get(cache_key)

        result = (
            self._match_exact(normalized)
            or self._match_alias(normalized)
            or self._match_fuzzy(normalized)
        )

        if self.cache is not None:
            self.cache.set(cache_key, result, ttl=self.cache_ttl)
        return result

    def _match_exact(self, normalized: str) -> Optional[_Classification]:
        for entry, keys in self._name_keys:
            if normalized in keys:
                return _Classification(entry, MatchType.EXACT, EXACT_CONFIDENCE)
        return None

    def _match_alias(self, normalized: str) -> Optional[_Classification]:
        for entry, keys in self._alias_keys:
            if normalized in keys:
                return _Classification(entry, MatchType.ALIAS, self.alias_confidence)
        return None

    def _match_fuzzy(self, normalized: str) -> Optional[_Classification]:
        best_entry: Optional[RegistryEntity] = None
        best_score = 0.0

        for entry, keys in self._name_keys:
            score = max(fuzz.ratio(normalized, key) for key in keys) if keys else 0.0
            # Strictly greater keeps the first entry on ties
            if score >= self.fuzzy_threshold and score > best_score:
                best_score = score
                best_entry = entry

        if best_entry is None:
            return None

        confidence = min(round(best_score / 100.0, 4), self.max_fuzzy_confidence)
        logger.debug(
            f"Fuzzy CDM match: '{normalized}' -> {best_entry.logical_name} "
            f"(score={best_score:.1f})"
        )
        return _Classification(best_entry, MatchType.FUZZY, confidence)

    def entities_by_category(self, category: Optional[str] = None) -> list[RegistryEntity]:
        """Registry entries, optionally filtered by category (cached when a cache is set)."""
        if category is None:
            return list(self.registry)

        cache_key = ("cdm_category", id(self.registry), category.lower())
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        entries = self.registry.get_by_category(category)
        if self.cache is not None:
            self.cache.set(cache_key, entries, ttl=self.cache_ttl)
        return entries


def build_recommendations(matches: list[MatchResult]) -> list[Recommendation]:
    """Suggest adopting matched CDM entities and related integration patterns."""
    recommendations: list[Recommendation] = []

    for match in matches:
        registry_entity = match.registry_entity
        if match.match_type == MatchType.FUZZY:
            priority = "medium"
            message = (
                f"'{match.original_entity.name}' looks similar to the standard "
                f"'{registry_entity.display_name}' entity; verify before using it"
            )
        else:
            priority = "high"
            message = (
                f"Use the standard '{registry_entity.display_name}' entity for "
                f"'{match.original_entity.name}' to get "
                f"{len(registry_entity.key_attributes)}+ pre-built attributes"
            )
        recommendations.append(
            Recommendation(
                type="use_cdm",
                priority=priority,
                message=message,
                entities=[registry_entity.logical_name],
            )
        )

    matched = {m.registry_entity.logical_name for m in matches}

    if {"account", "contact"} <= matched:
        recommendations.append(
            Recommendation(
                type="integration",
                priority="medium",
                message=(
                    "Account and Contact are both standard: keep the built-in "
                    "parent customer relationship between them"
                ),
                entities=["account", "contact"],
            )
        )

    if "opportunity" in matched and matched & {"account", "contact"}:
        related = sorted(matched & {"account", "contact"})
        recommendations.append(
            Recommendation(
                type="integration",
                priority="medium",
                message=(
                    "Opportunity can use the standard customer lookup to "
                    f"{' and '.join(related)} instead of a custom relationship"
                ),
                entities=["opportunity", *related],
            )
        )

    return recommendations
