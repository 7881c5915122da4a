"""Shared utilities for the ERD deployment API."""

from utils.cache import TTLCache
from utils.logging import LogContext, configure_logging, get_logger

__all__ = [
    "TTLCache",
    "LogContext",
    "configure_logging",
    "get_logger",
]
