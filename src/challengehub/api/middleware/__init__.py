"""API middleware package."""

from src.challengehub.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
