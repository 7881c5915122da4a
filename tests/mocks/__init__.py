"""Mock implementations for testing."""

from .platform_mock import MockPlatformClient

__all__ = ["MockPlatformClient"]
