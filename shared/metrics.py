"""
Shared metrics configuration for the admission-control service.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

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

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_admission_metrics()

    def _setup_admission_metrics(self):
        """Set up gate decision metrics."""
        self._metrics["admission_decisions_total"] = Counter(
            "admission_decisions_total",
            "Total gate decisions",
            ["gate", "outcome"],
            registry=self.registry
        )

        self._metrics["admission_store_failures_total"] = Counter(
            "admission_store_failures_total",
            "Total shared store failures absorbed by a gate",
            ["gate"],
            registry=self.registry
        )

        self._metrics["quota_tokens_recorded_total"] = Counter(
            "quota_tokens_recorded_total",
            "Total tokens recorded in the usage ledger",
            ["model"],
            registry=self.registry
        )

        self._metrics["admission_gate_duration_seconds"] = Histogram(
            "admission_gate_duration_seconds",
            "Gate evaluation duration in seconds",
            ["gate"],
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

    def record_decision(self, gate: str, outcome: str):
        """Record one gate decision (e.g. gate="rate_limit", outcome="rejected")."""
        self._metrics["admission_decisions_total"].labels(gate=gate, outcome=outcome).inc()

    def record_store_failure(self, gate: str):
        """Record a store failure that a gate converted into its default."""
        self._metrics["admission_store_failures_total"].labels(gate=gate).inc()

    def record_tokens(self, model: str, tokens: int):
        """Record tokens charged to the ledger."""
        self._metrics["quota_tokens_recorded_total"].labels(model=model).inc(tokens)

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
