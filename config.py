"""Application configuration for the ERD deployment service."""

from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from the environment or a .env file."""

    # Catalog matching thresholds (0-1 scale)
    fuzzy_match_threshold: float = 0.6  # Minimum similarity for a fuzzy CDM match
    alias_match_confidence: float = 0.9  # Fixed confidence of an alias match
    cdm_registry_path: str = ""  # Empty means the packaged data/cdm_entities.json
    registry_cache_ttl: int = 300  # 5 minutes in seconds
    registry_cache_max_entries: int = 1024  # Oldest classifications evicted beyond this

    # External platform calls
    external_call_timeout: float = 30.0  # Seconds per create/delete call

    # Publisher defaults when the request does not name one
    default_publisher_name: str = "Custom ERD Publisher"
    default_publisher_prefix: str = "cmmd"

    # Rollback status tracking
    rollback_status_retention: int = 3600  # Keep finished rollbacks for 1 hour
    rollback_cleanup_interval: float = 3600.0  # Run cleanup hourly

    # Deployment history
    deployment_history_backend: str = "memory"  # "memory" or "redis"
    deployment_history_max_entries: int = 50
    deployment_history_ttl: int = 86400 * 30  # 30 days in seconds
    redis_url: str = ""  # e.g., redis://localhost:6379

    # App
    log_level: str = "INFO"
    debug: bool = False

    @field_validator("fuzzy_match_threshold", "alias_match_confidence", mode="after")
    @classmethod
    def ensure_unit_interval(cls, v: float) -> float:
        """Similarity settings are fractions, not percentages."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be between 0 and 1")
        return v

    @field_validator("deployment_history_backend", mode="after")
    @classmethod
    def ensure_known_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError("deployment_history_backend must be 'memory' or 'redis'")
        return v

    @model_validator(mode="after")
    def ensure_fuzzy_below_alias(self) -> "Settings":
        """A fuzzy match must never outrank an alias match."""
        if self.fuzzy_match_threshold >= self.alias_match_confidence:
            raise ValueError(
                "fuzzy_match_threshold must be lower than alias_match_confidence"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
