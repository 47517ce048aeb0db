"""External service integrations."""

from .alerts import AlertService
from .keepalive import KeepAlive
from .vybe import VybeApiError, VybeClient

__all__ = ["AlertService", "KeepAlive", "VybeApiError", "VybeClient"]
