"""
Service facade for TLS Endpoint Monitor.

The API and CLI only call into this class; all certificate logic lives
behind it.
"""

from typing import Any, Dict, Iterable, List, Optional, Union

from tls_endpoint_monitor.config import Config
from tls_endpoint_monitor.errors import CertificateNotFound, InvalidTarget, ScanNotFound
from tls_endpoint_monitor.logger import get_logger
from tls_endpoint_monitor.metrics import MetricsCollector
from tls_endpoint_monitor.models import CertificateRecord, ScheduledScan
from tls_endpoint_monitor.scanner import BatchScanner
from tls_endpoint_monitor.scheduler import FiringRule, Scheduler
from tls_endpoint_monitor.store import CertificateStore, JsonFileStore
from tls_endpoint_monitor.targets import parse_ports, split_hosts

HostInput = Union[str, Iterable[str]]
PortInput = Union[str, int, Iterable[Union[str, int]]]


class MonitorService:
    """Request/response operations over the scanner, scheduler and store."""

    def __init__(
        self,
        config: Config,
        store: CertificateStore,
        scanner: BatchScanner,
        scheduler: Scheduler,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.store = store
        self.scanner = scanner
        self.scheduler = scheduler
        self.metrics = metrics
        self.logger = get_logger("service")

    @classmethod
    def from_config(
        cls,
        config: Config,
        metrics: Optional[MetricsCollector] = None,
        store: Optional[CertificateStore] = None,
    ) -> "MonitorService":
        """Wire up the default components for a configuration."""
        store = store or JsonFileStore(config.data_file)
        scanner = BatchScanner(config=config, metrics=metrics)
        scheduler = Scheduler(store=store, scanner=scanner, tz=config.tzinfo)
        return cls(config, store, scanner, scheduler, metrics)

    async def start(self) -> None:
        """Open the store and arm all active scheduled scans."""
        await self.store.initialize()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        self.scanner.close()
        await self.store.close()

    async def run_batch_scan(
        self, hosts: HostInput, ports: Optional[PortInput] = None
    ) -> List[CertificateRecord]:
        """
        Scan hosts x ports right away and store the results.

        Args:
            hosts: List of hosts, or free text separated by commas, semicolons or whitespace
            ports: Ports in any form accepted by ``parse_ports``; configured defaults when None

        Raises:
            InvalidTarget: no usable hosts or ports were given
        """
        host_list = split_hosts(hosts) if isinstance(hosts, str) else split_hosts(" ".join(hosts))
        port_list = self.config.default_ports if ports is None else parse_ports(ports)

        if not host_list:
            raise InvalidTarget("No valid hosts provided")
        if not port_list:
            raise InvalidTarget("No valid ports provided")

        self.logger.info(f"Starting scan for {len(host_list)} hosts on {len(port_list)} ports")
        records = await self.scanner.scan(host_list, port_list)
        for record in records:
            await self.store.upsert_certificate(record)
        return records

    async def create_or_update_scan(
        self, definition: Union[ScheduledScan, Dict[str, Any]]
    ) -> ScheduledScan:
        """
        Save a scheduled scan and (re)arm or disarm its timer.

        Run times are owned by the scheduler; values supplied by the caller
        are ignored.

        Raises:
            InvalidScheduleExpression: the frequency cannot be scheduled
            ScanNotFound: updating an id that does not exist
        """
        if isinstance(definition, ScheduledScan):
            scan = definition
        else:
            scan = ScheduledScan.model_validate(definition)

        FiringRule.parse(scan.frequency)

        if scan.id is not None:
            existing = await self.store.get_scan_definition(scan.id)
            if existing is None:
                raise ScanNotFound(scan.id)
            scan = scan.model_copy(
                update={"last_run": existing.last_run, "next_run": existing.next_run}
            )
        else:
            scan = scan.model_copy(update={"last_run": None, "next_run": None})

        saved = await self.store.upsert_scan_definition(scan)
        await self.scheduler.arm(saved)
        self.logger.info(f'Saved scheduled scan "{saved.name}" (ID: {saved.id})')

        return await self.get_scan(saved.id)  # type: ignore[arg-type]

    async def run_scan_now(self, scan_id: int) -> List[CertificateRecord]:
        """Run a scheduled scan immediately; its next scheduled run is unaffected."""
        return await self.scheduler.run_now(scan_id)

    async def delete_scan(self, scan_id: int) -> None:
        """
        Remove a scheduled scan and its timer.

        The definition goes first so that an arm racing with the delete
        either finds nothing to schedule or is cancelled right after.
        """
        deleted = await self.store.delete_scan_definition(scan_id)
        await self.scheduler.disarm(scan_id)
        if not deleted:
            raise ScanNotFound(scan_id)
        self.logger.info(f"Deleted scheduled scan ID {scan_id}")

    async def delete_certificate(self, host: str, port: int) -> None:
        """Forget the stored result for one endpoint."""
        if not await self.store.delete_certificate(host, port):
            raise CertificateNotFound(host, port)
        if self.metrics:
            self.metrics.remove_endpoint(host, port)
        self.logger.info(f"Deleted certificate record for {host}:{port}")

    async def get_scan(self, scan_id: int) -> ScheduledScan:
        scan = await self.store.get_scan_definition(scan_id)
        if scan is None:
            raise ScanNotFound(scan_id)
        return scan

    async def list_scans(self) -> List[ScheduledScan]:
        return await self.store.list_scan_definitions()

    async def list_certificates(self) -> List[CertificateRecord]:
        return await self.store.list_certificates()

    async def get_health_status(self) -> Dict[str, Any]:
        scanner_health = await self.scanner.get_health_status()
        return {
            **scanner_health,
            "scheduler_active_jobs": len(self.scheduler.active_jobs()),
            "data_file": self.config.data_file,
        }
