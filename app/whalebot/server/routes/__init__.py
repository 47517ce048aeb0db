"""Server route handlers."""

from __future__ import annotations

from .health_routes import HealthRoutes

__all__ = ["HealthRoutes"]
