"""
Prometheus metrics collection for TLS Endpoint Monitor.
"""

import socket
import sys
import time
from collections import Counter as StatusCounter
from typing import Any, Dict, Iterable

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from tls_endpoint_monitor.logger import get_logger
from tls_endpoint_monitor.models import CertificateRecord, CertificateStatus


class MetricsCollector:
    """Prometheus metrics collector for endpoint certificates and the application."""

    def __init__(self) -> None:
        self.logger = get_logger("metrics")
        self.registry = CollectorRegistry()

        # Certificate metrics
        self.tls_cert_expiration_timestamp = Gauge(
            "tls_cert_expiration_timestamp",
            "Certificate expiration time (Unix timestamp)",
            ["host", "port", "common_name"],
            registry=self.registry,
        )

        self.tls_cert_days_remaining = Gauge(
            "tls_cert_days_remaining",
            "Whole days until the certificate expires",
            ["host", "port"],
            registry=self.registry,
        )

        self.tls_cert_self_signed = Gauge(
            "tls_cert_self_signed",
            "1 if the endpoint presents a self-signed certificate",
            ["host", "port"],
            registry=self.registry,
        )

        self.tls_cert_status_total = Gauge(
            "tls_cert_status_total",
            "Endpoints per status in the most recent batch scan",
            ["status"],
            registry=self.registry,
        )

        # Operational metrics
        self.tls_probe_errors_total = Counter(
            "tls_probe_errors_total",
            "Failed endpoint probes by error type",
            ["error_type"],
            registry=self.registry,
        )

        self.tls_batch_scan_duration_seconds = Histogram(
            "tls_batch_scan_duration_seconds",
            "Batch scan duration",
            registry=self.registry,
        )

        self.tls_last_scan_timestamp = Gauge(
            "tls_last_scan_timestamp",
            "Completion time of the last batch scan",
            registry=self.registry,
        )

        # Application metrics
        self.app_memory_bytes = Gauge(
            "app_memory_bytes",
            "Application memory usage in bytes",
            ["type"],
            registry=self.registry,
        )

        self.app_cpu_percent = Gauge(
            "app_cpu_percent", "Application CPU usage percentage", registry=self.registry
        )

        self.app_thread_count = Gauge(
            "app_thread_count", "Number of application threads", registry=self.registry
        )

        self.app_info = Info(
            "app_info",
            "Application information",
            ["hostname", "version", "python_version"],
            registry=self.registry,
        )

        self._last_system_update = 0.0
        self._system_update_interval = 30  # Update system metrics every 30 seconds

        self.logger.info("Metrics collector initialized")

    def update_certificate_metrics(self, record: CertificateRecord) -> None:
        """
        Update metrics for one endpoint record.

        Error records clear the per-endpoint certificate gauges so a host that
        became unreachable does not keep reporting its old expiry.
        """
        port = str(record.port)
        try:
            if record.status == CertificateStatus.ERROR or record.valid_to is None:
                self.remove_endpoint(record.host, record.port)
                return

            self.tls_cert_expiration_timestamp.labels(
                host=record.host, port=port, common_name=record.common_name or "unknown"
            ).set(record.valid_to.timestamp())
            if record.days_remaining is not None:
                self.tls_cert_days_remaining.labels(host=record.host, port=port).set(
                    record.days_remaining
                )
            self.tls_cert_self_signed.labels(host=record.host, port=port).set(
                1 if record.self_signed else 0
            )
        except Exception as e:
            self.logger.error(f"Failed to update certificate metrics: {e}")

    def remove_endpoint(self, host: str, port: int) -> None:
        """Drop the certificate gauges of one endpoint."""
        port_label = str(port)
        for gauge in (self.tls_cert_days_remaining, self.tls_cert_self_signed):
            try:
                gauge.remove(host, port_label)
            except KeyError:
                pass
        # Expiration gauge carries the common name as well
        for metric in list(self.tls_cert_expiration_timestamp.collect()):
            for sample in metric.samples:
                if sample.labels.get("host") == host and sample.labels.get("port") == port_label:
                    try:
                        self.tls_cert_expiration_timestamp.remove(
                            host, port_label, sample.labels["common_name"]
                        )
                    except KeyError:
                        pass

    def record_probe_error(self, error_type: str) -> None:
        """Count a failed probe or decode."""
        self.tls_probe_errors_total.labels(error_type=error_type).inc()

    def update_batch_metrics(self, duration: float, records: Iterable[CertificateRecord]) -> None:
        """
        Update metrics describing a completed batch scan.

        Args:
            duration: Batch duration in seconds
            records: Records produced by the batch
        """
        try:
            counts = StatusCounter(record.status for record in records)
            for status in CertificateStatus:
                self.tls_cert_status_total.labels(status=status.value).set(counts.get(status, 0))

            self.tls_batch_scan_duration_seconds.observe(duration)
            self.tls_last_scan_timestamp.set(int(time.time()))
        except Exception as e:
            self.logger.error(f"Failed to update batch metrics: {e}")

    def update_system_metrics(self) -> None:
        """Update system and application metrics."""
        current_time = time.time()

        if current_time - self._last_system_update < self._system_update_interval:
            return

        try:
            process = psutil.Process()

            memory_info = process.memory_info()
            self.app_memory_bytes.labels(type="rss").set(int(memory_info.rss))
            self.app_memory_bytes.labels(type="vms").set(int(memory_info.vms))
            self.app_cpu_percent.set(process.cpu_percent())
            self.app_thread_count.set(int(process.num_threads()))

            from tls_endpoint_monitor import __version__

            self.app_info.labels(
                hostname=socket.gethostname(),
                version=__version__,
                python_version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ).info({"platform": sys.platform, "process_id": str(process.pid)})

            self._last_system_update = current_time

        except Exception as e:
            self.logger.error(f"Failed to update system metrics: {e}")

    def get_metrics(self) -> str:
        """
        Get Prometheus metrics in text format.

        Returns:
            Metrics in Prometheus text format
        """
        self.update_system_metrics()
        return generate_latest(self.registry).decode("utf-8")

    def get_content_type(self) -> str:
        """Get content type for metrics endpoint."""
        return CONTENT_TYPE_LATEST

    def get_registry_status(self) -> Dict[str, Any]:
        """Get Prometheus registry status for health checks."""
        try:
            metrics_count = len(list(self.registry.collect()))
            return {
                "prometheus_registry": {
                    "status": "healthy",
                    "metrics_count": metrics_count,
                    "last_update": self._last_system_update,
                }
            }
        except Exception as e:
            return {"prometheus_registry": {"status": "error", "error": str(e)}}
