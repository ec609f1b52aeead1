"""
Tests for the command line entry point.
"""

import asyncio
import json
import logging
import signal
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from main import TLSEndpointMonitor, format_table, main
from tls_endpoint_monitor import __version__
from tls_endpoint_monitor.config import Config
from tls_endpoint_monitor.logger import StructuredFormatter, get_logger
from tls_endpoint_monitor.models import CertificateRecord, CertificateStatus


def sample_records():
    return [
        CertificateRecord(
            host="a.example.com",
            port=443,
            common_name="a.example.com",
            valid_to=datetime(2025, 1, 31, tzinfo=timezone.utc),
            days_remaining=12,
            status=CertificateStatus.WARNING,
        ),
        CertificateRecord(
            host="b.example.com",
            port=8443,
            status=CertificateStatus.ERROR,
            error="Connection error: Connection refused",
        ),
    ]


class TestCLI:
    """Test click command handling."""

    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])

        assert result.exit_code == 0
        assert f"v{__version__}" in result.output

    def test_one_off_scan(self):
        """Test --scan prints a result table."""
        with patch.object(
            TLSEndpointMonitor, "scan_once", new=AsyncMock(return_value=sample_records())
        ) as scan_once:
            result = CliRunner().invoke(
                main, ["--scan", "a.example.com", "--scan", "b.example.com", "--port", "443"]
            )

        assert result.exit_code == 0
        scan_once.assert_awaited_once_with(["a.example.com", "b.example.com"], [443])
        assert "a.example.com:443" in result.output
        assert "Connection refused" in result.output

    def test_invalid_port(self):
        result = CliRunner().invoke(main, ["--scan", "a.example.com", "--port", "70000"])
        assert result.exit_code != 0


class TestServerMode:
    """Test handing the app over to uvicorn."""

    def test_run_serves_app(self):
        """Test run() serves the app and leaves signal handling to uvicorn."""
        monitor = TLSEndpointMonitor()
        monitor.config = Config(port=3300, bind_address="127.0.0.1")
        monitor.app = MagicMock()
        previous = signal.getsignal(signal.SIGTERM)

        with patch("main.uvicorn") as fake_uvicorn:
            fake_uvicorn.Server.return_value.serve = AsyncMock()
            asyncio.run(monitor.run())

        kwargs = fake_uvicorn.Config.call_args.kwargs
        assert kwargs["app"] is monitor.app
        assert kwargs["port"] == 3300
        assert "ssl_certfile" not in kwargs
        fake_uvicorn.Server.return_value.serve.assert_awaited_once()
        assert signal.getsignal(signal.SIGTERM) is previous


class TestFormatTable:
    """Test result table rendering."""

    def test_columns(self):
        lines = format_table(sample_records()).splitlines()

        assert lines[0].split() == ["ENDPOINT", "STATUS", "DAYS", "EXPIRES", "COMMON", "NAME", "/", "ERROR"]
        assert lines[1].split() == ["a.example.com:443", "warning", "12", "2025-01-31", "a.example.com"]
        assert lines[2].startswith("b.example.com:8443")
        assert "error" in lines[2]


class TestStructuredLogging:
    """Test JSON log formatting."""

    def test_extra_fields_included(self):
        logger = get_logger("test")
        record = logger.makeRecord(
            logger.name,
            logging.WARNING,
            __file__,
            1,
            "Error scanning a.example.com:443",
            None,
            None,
            extra={"endpoint": "a.example.com:443", "error_type": "timeout"},
        )

        data = json.loads(StructuredFormatter().format(record))

        assert data["logger"] == "tls_endpoint_monitor.test"
        assert data["endpoint"] == "a.example.com:443"
        assert data["error_type"] == "timeout"
