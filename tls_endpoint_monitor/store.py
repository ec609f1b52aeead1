"""
Persistence for TLS Endpoint Monitor.

The core only talks to :class:`CertificateStore`. :class:`JsonFileStore`
keeps everything in memory and mirrors it to a JSON file after each change.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from tls_endpoint_monitor.errors import StoreUnavailable
from tls_endpoint_monitor.logger import get_logger
from tls_endpoint_monitor.models import CertificateRecord, ScheduledScan


class CertificateStore(ABC):
    """Save/fetch/delete contract consumed by the scanner, scheduler and service."""

    async def initialize(self) -> None:
        """Open the store. Raises StoreUnavailable when it cannot be used."""

    async def close(self) -> None:
        """Flush and release the store."""

    @abstractmethod
    async def upsert_certificate(self, record: CertificateRecord) -> None:
        """Insert or replace the record for (record.host, record.port)."""

    @abstractmethod
    async def list_certificates(self) -> List[CertificateRecord]:
        """All records, soonest expiry first and error records last."""

    @abstractmethod
    async def delete_certificate(self, host: str, port: int) -> bool:
        ...

    @abstractmethod
    async def upsert_scan_definition(self, scan: ScheduledScan) -> ScheduledScan:
        """Insert or replace a definition, assigning an id when it has none."""

    @abstractmethod
    async def get_scan_definition(self, scan_id: int) -> Optional[ScheduledScan]:
        ...

    @abstractmethod
    async def list_scan_definitions(self) -> List[ScheduledScan]:
        ...

    @abstractmethod
    async def delete_scan_definition(self, scan_id: int) -> bool:
        ...

    @abstractmethod
    async def update_scan_run_times(
        self, scan_id: int, last_run: Optional[datetime], next_run: Optional[datetime]
    ) -> bool:
        """Set last/next run timestamps. Only the scheduler calls this."""


def _certificate_sort_key(record: CertificateRecord) -> Tuple[int, int, str, int]:
    if record.days_remaining is None:
        return (1, 0, record.host, record.port)
    return (0, record.days_remaining, record.host, record.port)


class JsonFileStore(CertificateStore):
    """
    In-memory store persisted to a JSON file.

    Writes go to a temporary file that is renamed over the data file, so a
    crash never leaves a half-written file behind. With ``path=None`` the
    store is memory only.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self.logger = get_logger("store")

        self._certificates: Dict[Tuple[str, int], CertificateRecord] = {}
        self._scans: Dict[int, ScheduledScan] = {}
        self._next_id = 1

        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self.path is None:
            self.logger.info("Store initialized - memory only")
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create data directory {self.path.parent}: {e}") from e

        if not os.access(self.path.parent, os.W_OK):
            raise StoreUnavailable(f"Data directory is not writable: {self.path.parent}")

        if self.path.exists():
            self._load()

        self.logger.info(
            f"Store initialized - {self.path} "
            f"({len(self._certificates)} certificates, {len(self._scans)} scheduled scans)"
        )

    async def close(self) -> None:
        async with self._lock:
            self._save()
        self.logger.info("Store closed")

    async def upsert_certificate(self, record: CertificateRecord) -> None:
        async with self._lock:
            self._certificates[record.key] = record.model_copy(deep=True)
            self._save()

    async def list_certificates(self) -> List[CertificateRecord]:
        async with self._lock:
            records = [record.model_copy(deep=True) for record in self._certificates.values()]
        return sorted(records, key=_certificate_sort_key)

    async def delete_certificate(self, host: str, port: int) -> bool:
        async with self._lock:
            if self._certificates.pop((host, port), None) is None:
                return False
            self._save()
            return True

    async def upsert_scan_definition(self, scan: ScheduledScan) -> ScheduledScan:
        async with self._lock:
            stored = scan.model_copy(deep=True)
            if stored.id is None:
                stored.id = self._next_id
            self._next_id = max(self._next_id, stored.id + 1)
            self._scans[stored.id] = stored
            self._save()
            return stored.model_copy(deep=True)

    async def get_scan_definition(self, scan_id: int) -> Optional[ScheduledScan]:
        async with self._lock:
            scan = self._scans.get(scan_id)
            return scan.model_copy(deep=True) if scan else None

    async def list_scan_definitions(self) -> List[ScheduledScan]:
        async with self._lock:
            return [self._scans[scan_id].model_copy(deep=True) for scan_id in sorted(self._scans)]

    async def delete_scan_definition(self, scan_id: int) -> bool:
        async with self._lock:
            if self._scans.pop(scan_id, None) is None:
                return False
            self._save()
            return True

    async def update_scan_run_times(
        self, scan_id: int, last_run: Optional[datetime], next_run: Optional[datetime]
    ) -> bool:
        async with self._lock:
            scan = self._scans.get(scan_id)
            if scan is None:
                return False
            scan.last_run = last_run
            scan.next_run = next_run
            self._save()
            return True

    def _save(self) -> None:
        """Write the current state to disk. Caller holds the lock."""
        if self.path is None:
            return

        data: Dict[str, Any] = {
            "next_id": self._next_id,
            "certificates": [
                record.model_dump(mode="json") for record in self._certificates.values()
            ],
            "scheduled_scans": [scan.model_dump(mode="json") for scan in self._scans.values()],
        }

        temp_file = self.path.with_suffix(".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            temp_file.replace(self.path)
        except OSError as e:
            raise StoreUnavailable(f"Failed to write {self.path}: {e}") from e

    def _load(self) -> None:
        assert self.path is not None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)

            for item in data.get("certificates", []):
                record = CertificateRecord.model_validate(item)
                self._certificates[record.key] = record

            for item in data.get("scheduled_scans", []):
                scan = ScheduledScan.model_validate(item)
                if scan.id is not None:
                    self._scans[scan.id] = scan

            highest_id = max(self._scans, default=0)
            self._next_id = max(int(data.get("next_id", 1)), highest_id + 1)
        except (OSError, ValueError, ValidationError) as e:
            raise StoreUnavailable(f"Failed to load {self.path}: {e}") from e
