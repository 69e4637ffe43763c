"""Structured logging, Prometheus metrics and health probes."""
from .health import HealthCheck
from .logging import setup_logging
from .metrics import MetricsCollector, metrics

__all__ = ["HealthCheck", "MetricsCollector", "metrics", "setup_logging"]
