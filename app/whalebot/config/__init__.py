"""Configuration."""

from .settings import Settings, ShutdownStrategy, Timings

__all__ = ["Settings", "ShutdownStrategy", "Timings"]
