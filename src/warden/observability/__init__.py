"""Warden observability package for logging setup and session metrics."""

from warden.observability.logging import configure_logging
from warden.observability.metrics import MetricsCollector

__all__ = ["MetricsCollector", "configure_logging"]
