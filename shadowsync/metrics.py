"""
Prometheus metrics for the shadowsync service.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
import psutil
import os


class Metrics:
    """
    Centralized metrics for the shadowsync service.
    """

    def __init__(self, service_name: str = "shadowsync", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )

        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            registry=self.registry,
        )

        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        # Event log
        self.events_appended_total = Counter(
            "shadowsync_events_appended_total",
            "Events appended to the event log",
            ["event_type"],
            registry=self.registry,
        )

        self.delivery_attempts_total = Counter(
            "shadowsync_delivery_attempts_total",
            "Event delivery attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self.delivery_latency = Histogram(
            "shadowsync_delivery_latency_seconds",
            "Time spent in a sink per delivery attempt",
            registry=self.registry,
        )

        # Shadow synchronization
        self.sync_operations_total = Counter(
            "shadowsync_sync_operations_total",
            "Shadow synchronization operations by outcome",
            ["operation", "outcome"],
            registry=self.registry,
        )

        self._setup_process_metrics()

    def _setup_process_metrics(self):
        """Set up process-level metrics using psutil."""
        self.process_memory_bytes = Gauge(
            "process_resident_memory_bytes",
            "Resident memory size in bytes",
            ["service"],
            registry=self.registry,
        )

        self.process_open_fds = Gauge(
            "process_open_fds",
            "Number of open file descriptors",
            ["service"],
            registry=self.registry,
        )

        self.update_system_metrics()

    def update_system_metrics(self):
        """Update system metrics from psutil."""
        try:
            process = psutil.Process(os.getpid())
            self.process_memory_bytes.labels(service=self.service_name).set(process.memory_info().rss)
            try:
                self.process_open_fds.labels(service=self.service_name).set(process.num_fds())
            except AttributeError:
                # num_fds() not available on all platforms
                pass
        except psutil.Error:
            pass

    def record_event_appended(self, event_type: str):
        self.events_appended_total.labels(event_type=event_type).inc()

    def record_delivery(self, outcome: str, duration_seconds: float | None = None):
        """Record a delivery attempt (delivered, failed or exhausted)."""
        self.delivery_attempts_total.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            self.delivery_latency.observe(duration_seconds)

    def record_sync(self, operation: str, outcome: str):
        self.sync_operations_total.labels(operation=operation, outcome=outcome).inc()
