"""
Recurring scan scheduler for TLS Endpoint Monitor.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from croniter import croniter

from tls_endpoint_monitor.errors import (
    InvalidScheduleExpression,
    ScanAlreadyRunning,
    ScanNotFound,
)
from tls_endpoint_monitor.logger import get_logger, log_schedule_armed, log_schedule_fired
from tls_endpoint_monitor.models import CertificateRecord, ScheduledScan, utc_now
from tls_endpoint_monitor.scanner import BatchScanner
from tls_endpoint_monitor.store import CertificateStore


class Cadence(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


CADENCE_EXPRESSIONS = {
    Cadence.HOURLY: "0 * * * *",  # top of every hour
    Cadence.DAILY: "0 0 * * *",  # midnight
    Cadence.WEEKLY: "0 0 * * 0",  # Sunday midnight
    Cadence.MONTHLY: "0 0 1 * *",  # 1st of the month, midnight
}


@dataclass(frozen=True)
class FiringRule:
    """When a scheduled scan fires: a named cadence or a custom cron expression."""

    cadence: Cadence
    expression: str

    @classmethod
    def parse(cls, frequency: str) -> "FiringRule":
        """
        Resolve a frequency string.

        Raises:
            InvalidScheduleExpression: not a cadence name and not valid cron
        """
        text = " ".join(str(frequency).split())
        named = {cadence.value: cadence for cadence in CADENCE_EXPRESSIONS}
        if text.lower() in named:
            cadence = named[text.lower()]
            return cls(cadence, CADENCE_EXPRESSIONS[cadence])

        if not text or not croniter.is_valid(text):
            raise InvalidScheduleExpression(
                frequency, "expected hourly, daily, weekly, monthly or a cron expression"
            )
        return cls(Cadence.CUSTOM, text)

    def next_after(self, moment: datetime, tz: tzinfo = timezone.utc) -> datetime:
        """Next firing strictly after ``moment``, evaluated in ``tz``, returned in UTC."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        upcoming = croniter(self.expression, moment.astimezone(tz)).get_next(datetime)
        return upcoming.astimezone(timezone.utc)


class Scheduler:
    """
    Owns one timer per active scheduled scan.

    Timers are asyncio tasks. The timer map, the next-run map and the set of
    scans with a run in flight are only touched while holding ``_lock``;
    probing never happens under it.
    """

    def __init__(
        self,
        store: CertificateStore,
        scanner: BatchScanner,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
        max_sleep: float = 60.0,
    ):
        self.store = store
        self.scanner = scanner
        self.tz = tz
        self.clock = clock
        self.max_sleep = max_sleep
        self.logger = get_logger("scheduler")

        self._timers: Dict[int, asyncio.Task] = {}
        self._next_runs: Dict[int, datetime] = {}
        self._running: Set[int] = set()
        self._firings: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Arm every active definition. A broken one is logged and left idle."""
        self.logger.info("Initializing scheduler...")
        for scan in await self.store.list_scan_definitions():
            if not scan.active:
                continue
            try:
                await self.arm(scan)
            except InvalidScheduleExpression as e:
                self.logger.error(f'Error scheduling scan "{scan.name}" (ID: {scan.id}): {e}')
        self.logger.info(f"Scheduler initialized with {len(self._timers)} active jobs")

    async def stop(self) -> None:
        """Cancel all timers and let runs already in progress finish."""
        async with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._next_runs.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        if self._firings:
            await asyncio.gather(*list(self._firings), return_exceptions=True)
        self.logger.info("Scheduler stopped")

    async def arm(self, scan: ScheduledScan) -> Optional[datetime]:
        """
        (Re)register the timer for a scan.

        Any existing timer for the id is cancelled first. Inactive scans, and
        scans no longer in the store, end up idle with no next run.

        Returns:
            The next run time, or None when the scan is inactive or gone

        Raises:
            InvalidScheduleExpression: the frequency cannot be scheduled
        """
        if scan.id is None:
            raise ValueError("Scheduled scan must be saved before it can be armed")

        async with self._lock:
            self._cancel_timer(scan.id)

            current = await self.store.get_scan_definition(scan.id)
            if current is None:
                self.logger.warning(
                    f"Scan ID {scan.id} is not in the store, skipping scheduling"
                )
                return None
            last_run = current.last_run

            if not scan.active:
                self.logger.info(
                    f'Scan "{scan.name}" (ID: {scan.id}) is inactive, skipping scheduling'
                )
                await self.store.update_scan_run_times(scan.id, last_run, None)
                return None

            try:
                rule = FiringRule.parse(scan.frequency)
            except InvalidScheduleExpression:
                await self.store.update_scan_run_times(scan.id, last_run, None)
                raise
            next_run = rule.next_after(self.clock(), self.tz)

            self._next_runs[scan.id] = next_run
            self._timers[scan.id] = asyncio.create_task(
                self._timer_loop(scan.id, rule), name=f"scheduled-scan-{scan.id}"
            )
            await self.store.update_scan_run_times(scan.id, last_run, next_run)

        log_schedule_armed(self.logger, scan.id, scan.name, next_run.isoformat())
        return next_run

    async def disarm(self, scan_id: int) -> bool:
        """
        Cancel the timer for a scan. A run already in progress is allowed to
        finish but will not schedule another.

        Returns:
            True if a timer was cancelled
        """
        async with self._lock:
            cancelled = self._cancel_timer(scan_id)
        if cancelled:
            self.logger.info(f"Cancelled job for scan ID: {scan_id}")
        return cancelled

    async def run_now(self, scan_id: int) -> List[CertificateRecord]:
        """
        Run a scan immediately, outside its timer.

        Updates the last run time; the next scheduled run is unchanged.

        Raises:
            ScanNotFound: no definition with this id
            ScanAlreadyRunning: a run for this id is already in flight
        """
        scan, records, last_run = await self._execute(scan_id)
        self.logger.info(f"Completed immediate run of scheduled scan: {scan.name} (ID: {scan_id})")

        async with self._lock:
            current = await self.store.get_scan_definition(scan_id)
            if current is not None:
                await self.store.update_scan_run_times(scan_id, last_run, current.next_run)
        return records

    def is_armed(self, scan_id: int) -> bool:
        timer = self._timers.get(scan_id)
        return timer is not None and not timer.done()

    def is_running(self, scan_id: int) -> bool:
        return scan_id in self._running

    def active_jobs(self) -> List[Dict[str, Any]]:
        """Armed scans with their next run times."""
        return [
            {"id": scan_id, "next_run": self._next_runs[scan_id].isoformat()}
            for scan_id in sorted(self._timers)
            if scan_id in self._next_runs
        ]

    def _cancel_timer(self, scan_id: int) -> bool:
        """Caller holds the lock."""
        self._next_runs.pop(scan_id, None)
        timer = self._timers.pop(scan_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    async def _execute(
        self, scan_id: int
    ) -> Tuple[ScheduledScan, List[CertificateRecord], datetime]:
        """Scan a definition's targets and store the results, one run per id at a time."""
        async with self._lock:
            if scan_id in self._running:
                raise ScanAlreadyRunning(scan_id)
            self._running.add(scan_id)

        try:
            scan = await self.store.get_scan_definition(scan_id)
            if scan is None:
                raise ScanNotFound(scan_id)

            records = await self.scanner.scan(scan.hosts, scan.ports)
            for record in records:
                await self.store.upsert_certificate(record)
            return scan, records, self.clock()
        finally:
            async with self._lock:
                self._running.discard(scan_id)

    async def _timer_loop(self, scan_id: int, rule: FiringRule) -> None:
        timer = asyncio.current_task()
        while True:
            next_run = self._next_runs.get(scan_id)
            if next_run is None:
                return
            await self._sleep_until(next_run)

            # Shielded so that disarming mid-run lets the run finish.
            firing = asyncio.create_task(self._fire(scan_id, rule, timer))
            self._firings.add(firing)
            firing.add_done_callback(self._firings.discard)
            await asyncio.shield(firing)

    async def _sleep_until(self, moment: datetime) -> None:
        # Sleep in slices so wall clock adjustments are picked up.
        while True:
            remaining = (moment - self.clock()).total_seconds()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, self.max_sleep))

    async def _fire(self, scan_id: int, rule: FiringRule, timer: Optional[asyncio.Task]) -> None:
        last_run: Optional[datetime] = None
        try:
            scan = await self.store.get_scan_definition(scan_id)
            if scan is not None:
                log_schedule_fired(self.logger, scan_id, scan.name)
            _, records, last_run = await self._execute(scan_id)
            self.logger.info(
                f"Completed scheduled scan (ID: {scan_id}) - {len(records)} results"
            )
        except ScanAlreadyRunning:
            self.logger.warning(
                f"Skipping scheduled run of scan ID {scan_id}: previous run still in progress"
            )
        except ScanNotFound:
            self.logger.warning(f"Scheduled scan ID {scan_id} no longer exists, skipping run")
        except Exception as e:
            self.logger.error(f"Error running scheduled scan (ID: {scan_id}): {e}", exc_info=True)

        try:
            async with self._lock:
                owned = self._timers.get(scan_id) is timer
                if owned:
                    self._next_runs[scan_id] = rule.next_after(self.clock(), self.tz)

                current = await self.store.get_scan_definition(scan_id)
                if current is None:
                    if owned:
                        self._cancel_timer(scan_id)
                        self.logger.info(f"Removed timer for deleted scan ID {scan_id}")
                    return
                if last_run is None:
                    last_run = current.last_run

                next_run = self._next_runs[scan_id] if owned else current.next_run
                await self.store.update_scan_run_times(scan_id, last_run, next_run)
        except Exception as e:
            self.logger.error(f"Error updating run times for scan ID {scan_id}: {e}")
