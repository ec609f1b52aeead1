"""
Batch certificate scanner for TLS Endpoint Monitor.
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from tls_endpoint_monitor.classifier import classify
from tls_endpoint_monitor.config import Config
from tls_endpoint_monitor.decoder import DecodedCertificate, compute_fingerprint, decode
from tls_endpoint_monitor.errors import CertificateDecodeError, InvalidTarget, ProbeError
from tls_endpoint_monitor.logger import (
    get_logger,
    log_batch_complete,
    log_certificate_classified,
    log_probe_failed,
)
from tls_endpoint_monitor.metrics import MetricsCollector
from tls_endpoint_monitor.models import CertificateRecord, CertificateStatus, utc_now
from tls_endpoint_monitor.probe import CertificateProbe, ProbeResult
from tls_endpoint_monitor.targets import expand_host


class BatchScanner:
    """
    Scans a (hosts x ports) cross product for TLS certificates.

    Every attempted pair yields exactly one record, in host-major order
    (each host with all of its ports before the next host). Failures for a
    pair are captured as ``error`` records and never abort the batch.
    """

    def __init__(
        self,
        config: Config,
        metrics: Optional[MetricsCollector] = None,
        probe: Optional[CertificateProbe] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.metrics = metrics
        self.probe = probe or CertificateProbe(
            timeout=config.probe_timeout, stall_grace=config.stall_grace
        )
        self.clock = clock
        self.logger = get_logger("scanner")

        self._executor = ThreadPoolExecutor(max_workers=config.workers)
        self._semaphore: Optional[asyncio.Semaphore] = None  # Created lazily in async context

        self.logger.info(f"Batch scanner initialized - Workers: {config.workers}")

    async def scan(self, hosts: Sequence[str], ports: Sequence[int]) -> List[CertificateRecord]:
        """
        Scan every host on every port.

        Host entries may be CIDR blocks or dash ranges; they are expanded
        first. Input is not de-duplicated.

        Args:
            hosts: Hostnames, IP addresses or IP ranges
            ports: TCP ports

        Returns:
            One classified record per attempted (host, port) pair
        """
        start_time = time.time()
        self.logger.info(f"Starting scan of {len(hosts)} hosts on {len(ports)} ports")

        pending: List[Tuple[str, int, Optional[CertificateRecord]]] = []
        for host in hosts:
            try:
                addresses = expand_host(host, self.config.max_range_hosts)
            except InvalidTarget as e:
                for port in ports:
                    pending.append((host, port, self._error_record(host, port, e, self.clock())))
                continue

            for address in addresses:
                for port in ports:
                    pending.append((address, port, None))

        results = await asyncio.gather(
            *(self._resolve(host, port, ready) for host, port, ready in pending),
            return_exceptions=True,
        )

        records: List[CertificateRecord] = []
        for (host, port, _), result in zip(pending, results):
            if isinstance(result, BaseException):
                self.logger.error(f"Task failed for {host}:{port}: {result}")
                result = self._error_record(host, port, result, self.clock())
            records.append(result)

        duration = time.time() - start_time
        errors = sum(1 for record in records if record.status == CertificateStatus.ERROR)
        if self.metrics:
            self.metrics.update_batch_metrics(duration, records)
        log_batch_complete(self.logger, len(records), errors, duration)

        return records

    async def _resolve(
        self, host: str, port: int, ready: Optional[CertificateRecord]
    ) -> CertificateRecord:
        if ready is not None:
            return ready
        return await self.scan_target(host, port)

    async def scan_target(self, host: str, port: int) -> CertificateRecord:
        """Probe, decode and classify a single endpoint."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.workers)

        scanned_at = self.clock()
        try:
            async with self._semaphore:
                probe_result = await self.probe.probe(host, port)
        except ProbeError as e:
            return self._error_record(host, port, e, scanned_at)

        try:
            loop = asyncio.get_running_loop()
            decoded = await loop.run_in_executor(self._executor, decode, probe_result.der)
        except CertificateDecodeError as e:
            return self._error_record(
                host, port, e, scanned_at, fingerprint=compute_fingerprint(probe_result.der)
            )

        return self.build_record(probe_result, decoded, scanned_at)

    def build_record(
        self, probe_result: ProbeResult, decoded: DecodedCertificate, scanned_at: datetime
    ) -> CertificateRecord:
        """
        Combine handshake and decoder fields into a classified record.

        The handshake contributes the endpoint, the fingerprint of the raw
        bytes, the negotiated protocol and the cipher; everything else comes
        from the decoder.
        """
        fields: Dict[str, Any] = {
            "host": probe_result.host,
            "port": probe_result.port,
            "fingerprint": compute_fingerprint(probe_result.der),
            "tls_version": probe_result.tls_version,
            "cipher": probe_result.cipher,
        }
        fields.update(decoded.as_fields())

        if decoded.valid_to is None:
            reason = "Certificate validity could not be decoded"
            if decoded.field_errors:
                reason += f" ({'; '.join(decoded.field_errors)})"
            return self._error_record(
                probe_result.host,
                probe_result.port,
                CertificateDecodeError(reason),
                scanned_at,
                **{k: v for k, v in fields.items() if k not in ("host", "port")},
            )

        classification = classify(
            decoded.valid_to,
            decoded.issuer,
            decoded.subject,
            scanned_at,
            warning_days=self.config.warning_days,
        )
        record = CertificateRecord(
            **fields,
            status=classification.status,
            days_remaining=classification.days_remaining,
            self_signed=classification.self_signed,
            last_scanned=scanned_at,
        )

        log_certificate_classified(
            self.logger, record.host, record.port, record.status.value, record.days_remaining
        )
        if self.metrics:
            self.metrics.update_certificate_metrics(record)
        return record

    def _error_record(
        self, host: str, port: int, error: BaseException, scanned_at: datetime, **fields: Any
    ) -> CertificateRecord:
        log_probe_failed(self.logger, host, port, error)
        error_type = getattr(error, "kind", type(error).__name__)
        reason = getattr(error, "reason", None) or str(error) or type(error).__name__

        record = CertificateRecord(
            host=host,
            port=port,
            status=CertificateStatus.ERROR,
            error=reason,
            last_scanned=scanned_at,
            **fields,
        )
        if self.metrics:
            self.metrics.record_probe_error(error_type)
            self.metrics.update_certificate_metrics(record)
        return record

    def close(self) -> None:
        """Release the decoder thread pool."""
        self._executor.shutdown(wait=True)
        self.logger.info("Batch scanner stopped")

    async def get_health_status(self) -> Dict[str, Any]:
        """Get scanner health status."""
        return {
            "worker_pool_size": self.config.workers,
            "probe_timeout": self.config.probe_timeout,
            "probe_watchdog_timeout": self.config.watchdog_timeout,
        }
