"""Observability layer - logging and metrics."""

from litharvest.observability.logging import setup_logging
from litharvest.observability.metrics import MetricsCollector, get_metrics

__all__ = ["setup_logging", "MetricsCollector", "get_metrics"]
