"""
TLS Endpoint Monitor

Probes network endpoints for their TLS certificates, classifies them by
expiry and runs recurring scans on cron-style schedules.
"""

__version__ = "1.0.0"
__author__ = "TLS Endpoint Monitor Team"
__description__ = "TLS endpoint certificate scanning and expiry monitoring"

from tls_endpoint_monitor.config import Config
from tls_endpoint_monitor.metrics import MetricsCollector
from tls_endpoint_monitor.scanner import BatchScanner
from tls_endpoint_monitor.scheduler import Scheduler
from tls_endpoint_monitor.service import MonitorService

__all__ = [
    "BatchScanner",
    "Config",
    "MetricsCollector",
    "MonitorService",
    "Scheduler",
]
