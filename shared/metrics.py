"""
Shared metrics configuration for the Access Policy Decision Point.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager


class MetricsCollector:
    """Centralized metrics collector for services.

    Metrics are registered in ``registry``. With ``registry=None`` they are
    created unregistered, so several collectors (one per engine, one per
    test) can coexist in a process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_policy_metrics()

    def _setup_policy_metrics(self):
        """Set up decision point metrics."""
        self._metrics["policy_decisions_total"] = Counter(
            "policy_decisions_total",
            "Total policy decisions",
            ["decision"],
            registry=self.registry
        )

        self._metrics["policy_evaluation_duration_seconds"] = Histogram(
            "policy_evaluation_duration_seconds",
            "Policy evaluation duration in seconds",
            registry=self.registry
        )

        self._metrics["policy_fail_closed_total"] = Counter(
            "policy_fail_closed_total",
            "Decisions forced to DENY by an internal failure",
            ["cause"],
            registry=self.registry
        )

        self._metrics["policy_cache_refresh_total"] = Counter(
            "policy_cache_refresh_total",
            "Policy cache rebuilds",
            ["status"],
            registry=self.registry
        )

        self._metrics["policy_cache_size"] = Gauge(
            "policy_cache_size",
            "Active policies in the current snapshot",
            registry=self.registry
        )

        self._metrics["audit_queue_depth"] = Gauge(
            "audit_queue_depth",
            "Pending audit and statistics jobs",
            registry=self.registry
        )

        self._metrics["audit_jobs_dropped_total"] = Counter(
            "audit_jobs_dropped_total",
            "Audit jobs dropped because the queue was full",
            ["kind"],
            registry=self.registry
        )

        self._metrics["audit_write_failures_total"] = Counter(
            "audit_write_failures_total",
            "Audit jobs that failed or timed out",
            ["kind"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_decision(self, decision: str, duration: float):
        """Record one policy decision."""
        self._metrics["policy_decisions_total"].labels(decision=decision).inc()
        self._metrics["policy_evaluation_duration_seconds"].observe(duration)

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            if operation_name in self._metrics:
                metric = self._metrics[operation_name]
                (metric.labels(**labels) if labels else metric).observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
