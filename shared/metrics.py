"""
Shared metrics configuration for the Moderation Relay.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest
from typing import Dict, Any, Optional
import threading


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
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

        if self.service_name == "relay":
            self._setup_relay_metrics()

    def _setup_relay_metrics(self):
        """Set up relay-specific metrics."""
        self._metrics["rate_limit_rejections_total"] = Counter(
            "rate_limit_rejections_total",
            "Requests declined by admission control",
            ["reason"],
            registry=self.registry
        )

        self._metrics["blacklist_events_total"] = Counter(
            "blacklist_events_total",
            "Identifiers escalated to the temporary blacklist",
            registry=self.registry
        )

        self._metrics["rate_limit_tracked_clients"] = Gauge(
            "rate_limit_tracked_clients",
            "Client windows currently held in memory",
            registry=self.registry
        )

        self._metrics["rate_limit_blacklisted_clients"] = Gauge(
            "rate_limit_blacklisted_clients",
            "Identifiers currently blacklisted",
            registry=self.registry
        )

        self._metrics["commands_logged_total"] = Counter(
            "commands_logged_total",
            "Command log entries written",
            ["command", "success"],
            registry=self.registry
        )

        self._metrics["log_rotations_total"] = Counter(
            "log_rotations_total",
            "Command log archive units written",
            ["reason"],
            registry=self.registry
        )

        self._metrics["notification_failures_total"] = Counter(
            "notification_failures_total",
            "Notification dispatches that failed",
            registry=self.registry
        )

        self._metrics["notification_circuit_open"] = Gauge(
            "notification_circuit_open",
            "1 while the log webhook circuit breaker is open",
            registry=self.registry
        )

        self._metrics["actions_enqueued_total"] = Counter(
            "actions_enqueued_total",
            "Pending actions enqueued",
            ["type"],
            registry=self.registry
        )

        self._metrics["actions_drained_total"] = Counter(
            "actions_drained_total",
            "Pending actions delivered to polling clients",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

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

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).inc(amount)
            else:
                metric.inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric.labels(**labels).set(value)
        else:
            metric.set(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
