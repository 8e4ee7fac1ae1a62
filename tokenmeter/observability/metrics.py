"""
tokenmeter - Prometheus Metrics

Metrics exposed:
- tokenmeter_requests_total: Counter of HTTP requests by endpoint, method, status
- tokenmeter_request_duration_seconds: Histogram of HTTP request latency
- tokenmeter_active_requests: Gauge of in-flight HTTP requests
- tokenmeter_tokens_recorded_total: Counter of metered tokens by model and usage type
- tokenmeter_cost_usd_total: Counter of estimated cost in USD by model
- tokenmeter_quota_checks_total: Counter of admission checks by outcome and scope
- tokenmeter_quota_rollovers_total: Counter of daily/monthly counter resets
- tokenmeter_recording_failures_total: Counter of usage events that failed to persist
- tokenmeter_quota_sync_runs_total: Counter of policy sync runs by status

Usage:
    from tokenmeter.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.record_usage(model="gpt-4", usage_type="chat", tokens=120, cost_usd=0.0054)
    metrics.record_quota_check(allowed=False, scope="daily")
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response


class MetricsCollector:
    """
    Central metrics collector using Prometheus client.

    Collectors register once per registry; later instances on the same
    registry share the first instance's collectors.
    """

    _instance: Optional["MetricsCollector"] = None
    _initialized_registries: set = set()

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        registry_id = id(registry)
        if registry_id in MetricsCollector._initialized_registries:
            if MetricsCollector._instance is not None:
                self._copy_from(MetricsCollector._instance)
                return

        MetricsCollector._initialized_registries.add(registry_id)

        self.info = Info(
            "tokenmeter",
            "tokenmeter service information",
            registry=registry,
        )
        self.info.info({
            "version": "1.0.0",
            "service": "tokenmeter",
        })

        self.requests_total = Counter(
            "tokenmeter_requests_total",
            "Total number of HTTP requests",
            labelnames=["endpoint", "method", "status", "error_type"],
            registry=registry,
        )

        # Accounting calls are short, buckets stop well below a second
        self.request_duration = Histogram(
            "tokenmeter_request_duration_seconds",
            "HTTP request duration in seconds",
            labelnames=["endpoint", "method"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, float("inf")),
            registry=registry,
        )

        self.active_requests = Gauge(
            "tokenmeter_active_requests",
            "Number of currently active requests",
            labelnames=["endpoint"],
            registry=registry,
        )

        self.tokens_recorded = Counter(
            "tokenmeter_tokens_recorded_total",
            "Total tokens recorded",
            labelnames=["model", "usage_type"],
            registry=registry,
        )

        self.cost_total = Counter(
            "tokenmeter_cost_usd_total",
            "Total estimated cost in USD",
            labelnames=["model"],
            registry=registry,
        )

        # outcome = allowed/denied, scope = daily/monthly/none
        self.quota_checks = Counter(
            "tokenmeter_quota_checks_total",
            "Total admission checks",
            labelnames=["outcome", "scope"],
            registry=registry,
        )

        self.quota_rollovers = Counter(
            "tokenmeter_quota_rollovers_total",
            "Total quota counter resets",
            labelnames=["scope"],
            registry=registry,
        )

        self.recording_failures = Counter(
            "tokenmeter_recording_failures_total",
            "Usage events that could not be persisted",
            labelnames=["usage_type"],
            registry=registry,
        )

        self.sync_runs = Counter(
            "tokenmeter_quota_sync_runs_total",
            "Policy sync runs",
            labelnames=["status"],
            registry=registry,
        )

    @classmethod
    def get_instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton (for testing)."""
        cls._instance = None
        cls._initialized_registries.clear()

    def _copy_from(self, other: "MetricsCollector"):
        self.info = other.info
        self.requests_total = other.requests_total
        self.request_duration = other.request_duration
        self.active_requests = other.active_requests
        self.tokens_recorded = other.tokens_recorded
        self.cost_total = other.cost_total
        self.quota_checks = other.quota_checks
        self.quota_rollovers = other.quota_rollovers
        self.recording_failures = other.recording_failures
        self.sync_runs = other.sync_runs

    def record_request(
        self,
        endpoint: str,
        method: str,
        status_code: int,
        duration_seconds: float,
        error_type: Optional[str] = None,
    ):
        """Record a completed HTTP request."""
        self.requests_total.labels(
            endpoint=endpoint,
            method=method,
            status=str(status_code),
            error_type=error_type or "none",
        ).inc()

        self.request_duration.labels(
            endpoint=endpoint,
            method=method,
        ).observe(duration_seconds)

    def record_usage(
        self,
        model: str,
        usage_type: str,
        tokens: int,
        cost_usd: float = 0.0,
    ):
        """Record a persisted usage event."""
        self.tokens_recorded.labels(model=model, usage_type=usage_type).inc(tokens)
        if cost_usd > 0:
            self.cost_total.labels(model=model).inc(cost_usd)

    def record_quota_check(self, allowed: bool, scope: Optional[str] = None):
        self.quota_checks.labels(
            outcome="allowed" if allowed else "denied",
            scope=scope or "none",
        ).inc()

    def record_rollover(self, scope: str):
        self.quota_rollovers.labels(scope=scope).inc()

    def record_recording_failure(self, usage_type: str):
        self.recording_failures.labels(usage_type=usage_type).inc()

    def record_sync(self, success: bool):
        self.sync_runs.labels(status="success" if success else "error").inc()

    def track_active_request(self, endpoint: str) -> "ActiveRequestTracker":
        """Context manager to track active requests."""
        return ActiveRequestTracker(self, endpoint)


class ActiveRequestTracker:
    """Context manager for tracking active requests."""

    def __init__(self, collector: MetricsCollector, endpoint: str):
        self.collector = collector
        self.endpoint = endpoint

    def __enter__(self):
        self.collector.active_requests.labels(endpoint=self.endpoint).inc()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.collector.active_requests.labels(endpoint=self.endpoint).dec()


_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection.

    Safe to call multiple times - returns existing instance.
    """
    global _metrics_instance

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    _metrics_instance = MetricsCollector(registry)
    MetricsCollector._instance = _metrics_instance
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, creating a default one on first use."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector.get_instance()
    return _metrics_instance


def metrics_endpoint() -> Response:
    """Prometheus exposition of the active collector's registry."""
    content = generate_latest(get_metrics().registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
