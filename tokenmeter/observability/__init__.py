"""
tokenmeter - Observability Module

- Prometheus metrics (Counter, Histogram, Gauge)
- OpenTelemetry distributed tracing
- Structured JSON logging with context injection
- W3C trace context propagation

Usage:
    from tokenmeter.observability import setup_observability, get_logger

    setup_observability(service_name="tokenmeter")
    logger = get_logger(__name__)
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    TracingManager,
    get_tracer,
    get_tracing_manager,
    setup_tracing,
    trace_quota_operation,
)
from .logging import (
    StructuredLogger,
    get_logger,
    setup_logging,
    LogContext,
    TimedOperation,
)
from .middleware import (
    ObservabilityMiddleware,
    setup_observability,
    get_request_context,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "setup_metrics",
    "metrics_endpoint",
    # Tracing
    "TracingManager",
    "get_tracer",
    "get_tracing_manager",
    "setup_tracing",
    "trace_quota_operation",
    # Logging
    "StructuredLogger",
    "get_logger",
    "setup_logging",
    "LogContext",
    "TimedOperation",
    # Combined
    "ObservabilityMiddleware",
    "setup_observability",
    "get_request_context",
]
