"""Logging, Prometheus collectors and the HTTP metrics middleware."""

from repotrack_api.observability.logging import configure_logging, get_logger
from repotrack_api.observability.metrics import record_queue_stats
from repotrack_api.observability.middleware import MetricsMiddleware

__all__ = ["MetricsMiddleware", "configure_logging", "get_logger", "record_queue_stats"]
