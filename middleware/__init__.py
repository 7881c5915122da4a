"""Middleware components for the ERD deployment API."""

from middleware.request_id import RequestIDMiddleware

__all__ = ["RequestIDMiddleware"]
