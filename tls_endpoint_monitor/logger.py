"""
Standardized logging configuration for TLS Endpoint Monitor.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from tls_endpoint_monitor.config import Config


class CustomFormatter(logging.Formatter):
    """Custom formatter with colored output for console."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True) -> None:
        self.use_color = use_color
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with optional colors."""
        if self.use_color and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            reset = self.COLORS["RESET"]
            level_name = f"{color}{record.levelname:<8}{reset}"
        else:
            level_name = f"{record.levelname:<8}"

        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        message = record.getMessage()

        if record.exc_info:
            if not message.endswith("\n"):
                message += "\n"
            message += self.formatException(record.exc_info)

        return f"{timestamp} | {level_name} | {record.name:<32} | {message}"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = (
        "endpoint",
        "error_type",
        "scan_id",
        "scan_name",
        "scan_duration",
        "targets",
        "errors",
        "status",
        "days_remaining",
        "next_run",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(config: Config) -> None:
    """
    Setup logging configuration.

    Args:
        config: Configuration object
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.log_level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, config.log_level))

    # Use colored formatter for console if output is a TTY
    use_color = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
    console_handler.setFormatter(CustomFormatter(use_color=use_color))
    root_logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"  # 10MB
        )
        file_handler.setLevel(getattr(logging, config.log_level))
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    app_logger = logging.getLogger("tls_endpoint_monitor")
    app_logger.info(f"Logging initialized - Level: {config.log_level}")

    if config.log_file:
        app_logger.info(f"Log file: {config.log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(f"tls_endpoint_monitor.{name}")


# Logging helpers for probe and scan operations
def log_probe_start(logger: logging.Logger, host: str, port: int) -> None:
    """Log the start of a single endpoint probe."""
    logger.debug(f"Connecting to {host}:{port}", extra={"endpoint": f"{host}:{port}"})


def log_probe_failed(logger: logging.Logger, host: str, port: int, error: Exception) -> None:
    """Log a failed probe or decode for one endpoint."""
    error_type = getattr(error, "kind", type(error).__name__)
    logger.warning(
        f"Error scanning {host}:{port} - {error}",
        extra={"endpoint": f"{host}:{port}", "error_type": error_type},
    )


def log_certificate_classified(
    logger: logging.Logger, host: str, port: int, status: str, days_remaining: Optional[int]
) -> None:
    """Log a successfully classified certificate."""
    logger.debug(
        f"Certificate for {host}:{port} is {status} ({days_remaining} days remaining)",
        extra={"endpoint": f"{host}:{port}", "status": status, "days_remaining": days_remaining},
    )


def log_batch_complete(
    logger: logging.Logger, targets: int, errors: int, duration: float
) -> None:
    """Log batch scan completion."""
    logger.info(
        f"Batch scan completed - Targets: {targets}, Errors: {errors}, Duration: {duration:.2f}s",
        extra={"targets": targets, "errors": errors, "scan_duration": duration},
    )


def log_schedule_armed(logger: logging.Logger, scan_id: int, name: str, next_run: str) -> None:
    """Log a scheduled scan timer being registered."""
    logger.info(
        f'Scheduled scan "{name}" (ID: {scan_id}) - Next run: {next_run}',
        extra={"scan_id": scan_id, "scan_name": name, "next_run": next_run},
    )


def log_schedule_fired(logger: logging.Logger, scan_id: int, name: str) -> None:
    """Log a scheduled scan firing."""
    logger.info(
        f"Running scheduled scan: {name} (ID: {scan_id})",
        extra={"scan_id": scan_id, "scan_name": name},
    )
