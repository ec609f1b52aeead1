#!/usr/bin/env python3
"""
TLS Endpoint Monitor - Main Application Entry Point
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
import uvicorn
from fastapi import FastAPI

from tls_endpoint_monitor import __version__
from tls_endpoint_monitor.api import create_app
from tls_endpoint_monitor.config import Config, load_config
from tls_endpoint_monitor.errors import MonitorError
from tls_endpoint_monitor.logger import setup_logging
from tls_endpoint_monitor.metrics import MetricsCollector
from tls_endpoint_monitor.models import CertificateRecord
from tls_endpoint_monitor.service import MonitorService


class TLSEndpointMonitor:
    """Main application class for TLS Endpoint Monitor."""

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        self.config: Optional[Config] = None
        self.metrics: Optional[MetricsCollector] = None
        self.service: Optional[MonitorService] = None
        self.app: Optional[FastAPI] = None
        self.config_path = config_path
        self.dry_run = dry_run
        # Initialize logger early to avoid AttributeError
        self.logger = logging.getLogger(__name__)

    async def initialize(self) -> None:
        """Initialize all application components."""
        try:
            self.config = load_config(self.config_path)
            if self.dry_run:
                self.config.dry_run = True

            setup_logging(self.config)
            self.logger.info("Initializing TLS Endpoint Monitor")

            self.metrics = MetricsCollector()
            self.service = MonitorService.from_config(self.config, metrics=self.metrics)
            self.app = create_app(service=self.service, metrics=self.metrics, config=self.config)

            self.logger.info("TLS Endpoint Monitor initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize application: {e}")
            raise

    async def run(self) -> None:
        """Run the application server or a one-shot dry run."""
        if not self.app:
            await self.initialize()

        assert self.config is not None, "Config should be initialized"

        if self.config.dry_run:
            await self.run_dry()
            return

        config_dict = {
            "app": self.app,
            "host": self.config.bind_address,
            "port": self.config.port,
            "log_level": self.config.log_level.lower(),
            "access_log": True,
        }

        if self.config.tls_cert and self.config.tls_key:
            config_dict.update(
                {
                    "ssl_keyfile": self.config.tls_key,
                    "ssl_certfile": self.config.tls_cert,
                }
            )
            self.logger.info(
                f"Starting HTTPS server on {self.config.bind_address}:{self.config.port}"
            )
        else:
            self.logger.info(
                f"Starting HTTP server on {self.config.bind_address}:{self.config.port}"
            )

        # uvicorn installs its own signal handlers; the app lifespan starts
        # and stops the service on the server loop
        server = uvicorn.Server(uvicorn.Config(**config_dict))  # type: ignore[arg-type]

        try:
            await server.serve()
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal")
        finally:
            self.logger.info("Graceful shutdown completed")

    async def run_dry(self) -> None:
        """Run every active scheduled scan once and exit."""
        assert self.service is not None
        self.logger.info("Running in dry-run mode - running active scheduled scans once")

        await self.service.store.initialize()
        try:
            for scan in await self.service.list_scans():
                if not scan.active or scan.id is None:
                    continue
                try:
                    records = await self.service.run_scan_now(scan.id)
                    self.logger.info(f'Dry-run of "{scan.name}" produced {len(records)} results')
                except MonitorError as e:
                    self.logger.error(f'Dry-run of "{scan.name}" failed: {e}')
        finally:
            await self.shutdown()
        self.logger.info("Dry-run completed")

    async def scan_once(self, hosts: List[str], ports: List[int]) -> List[CertificateRecord]:
        """Scan the given endpoints once without starting the scheduler."""
        if not self.service:
            await self.initialize()
        assert self.service is not None

        await self.service.store.initialize()
        try:
            return await self.service.run_batch_scan(hosts, ports or None)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop the service outside of the server lifespan."""
        self.logger.info("Starting graceful shutdown")
        if self.service:
            await self.service.stop()
        self.logger.info("Graceful shutdown completed")


def format_table(records: List[CertificateRecord]) -> str:
    """Render scan results as a plain text table."""
    headers = ("ENDPOINT", "STATUS", "DAYS", "EXPIRES", "COMMON NAME / ERROR")
    rows: List[Tuple[str, ...]] = []
    for record in records:
        rows.append(
            (
                record.endpoint,
                record.status.value,
                "" if record.days_remaining is None else str(record.days_remaining),
                record.valid_to.strftime("%Y-%m-%d") if record.valid_to else "",
                record.error or record.common_name,
            )
        )

    widths = [len(header) for header in headers]
    for row in rows:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]

    lines = ["  ".join(cell.ljust(width) for cell, width in zip(headers, widths)).rstrip()]
    for row in rows:
        lines.append("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())
    return "\n".join(lines)


@click.command()
@click.option(
    "--config",
    "-f",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--version", "-v", is_flag=True, help="Show version information")
@click.option(
    "--dry-run", is_flag=True, help="Run each active scheduled scan once, don't start server"
)
@click.option(
    "--scan",
    "scan_hosts",
    multiple=True,
    help="Scan a host once and print the results (repeatable)",
)
@click.option(
    "--port",
    "scan_ports",
    type=click.IntRange(1, 65535),
    multiple=True,
    help="Port for --scan (repeatable, defaults to configured ports)",
)
def main(
    config: Optional[Path],
    version: bool,
    dry_run: bool,
    scan_hosts: Tuple[str, ...],
    scan_ports: Tuple[int, ...],
) -> None:
    """TLS Endpoint Monitor - Scan TLS endpoints and track certificate expiry."""

    if version:
        print(f"TLS Endpoint Monitor v{__version__}")
        return

    try:
        monitor = TLSEndpointMonitor(str(config) if config else None, dry_run=dry_run)

        if scan_hosts:
            records = asyncio.run(monitor.scan_once(list(scan_hosts), list(scan_ports)))
            print(format_table(records))
            return

        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        print(f"Application failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
