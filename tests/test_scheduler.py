"""
Tests for the recurring scan scheduler.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from conftest import FakeScanner

from tls_endpoint_monitor.errors import (
    InvalidScheduleExpression,
    ScanAlreadyRunning,
    ScanNotFound,
)
from tls_endpoint_monitor.models import ScheduledScan
from tls_endpoint_monitor.scheduler import Cadence, FiringRule, Scheduler
from tls_endpoint_monitor.store import JsonFileStore

NOON = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)


class OffsetClock:
    """Clock that starts at a chosen moment and advances with real time."""

    def __init__(self, start: datetime):
        self.start = start
        self.origin = time.monotonic()

    def __call__(self) -> datetime:
        return self.start + timedelta(seconds=time.monotonic() - self.origin)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not await predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestFiringRule:
    """Test frequency resolution."""

    @pytest.mark.parametrize(
        "frequency,cadence,expression",
        [
            ("hourly", Cadence.HOURLY, "0 * * * *"),
            ("daily", Cadence.DAILY, "0 0 * * *"),
            ("Weekly", Cadence.WEEKLY, "0 0 * * 0"),
            ("MONTHLY", Cadence.MONTHLY, "0 0 1 * *"),
            ("*/15  *  * * *", Cadence.CUSTOM, "*/15 * * * *"),
        ],
    )
    def test_parse(self, frequency, cadence, expression):
        """Test named cadences and custom cron expressions."""
        rule = FiringRule.parse(frequency)

        assert rule.cadence == cadence
        assert rule.expression == expression

    @pytest.mark.parametrize("frequency", ["fortnightly", "61 * * * *", "", "* * *"])
    def test_parse_invalid(self, frequency):
        """Test invalid frequencies are rejected as ValueErrors."""
        with pytest.raises(InvalidScheduleExpression) as exc_info:
            FiringRule.parse(frequency)

        assert isinstance(exc_info.value, ValueError)

    def test_next_after_daily(self):
        """Test the next firing is strictly after the given moment."""
        rule = FiringRule.parse("daily")

        assert rule.next_after(NOON) == datetime(2024, 1, 2, tzinfo=timezone.utc)
        midnight = datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert rule.next_after(midnight) == datetime(2024, 1, 3, tzinfo=timezone.utc)

    def test_next_after_monthly(self):
        rule = FiringRule.parse("monthly")

        assert rule.next_after(datetime(2024, 1, 31, 8, tzinfo=timezone.utc)) == datetime(
            2024, 2, 1, tzinfo=timezone.utc
        )

    def test_next_after_in_timezone(self):
        """Test cron expressions are evaluated in the configured timezone."""
        rule = FiringRule.parse("daily")

        next_run = rule.next_after(NOON, ZoneInfo("America/New_York"))

        assert next_run == datetime(2024, 1, 2, 5, 0, tzinfo=timezone.utc)
        assert next_run.tzinfo == timezone.utc


class TestScheduler:
    """Test arming, running and disarming scheduled scans."""

    @pytest.fixture
    def store(self):
        return JsonFileStore()

    @pytest.fixture
    def scanner(self):
        return FakeScanner()

    async def save(self, store, **fields):
        fields.setdefault("name", "web")
        fields.setdefault("hosts", ["a.example.com"])
        return await store.upsert_scan_definition(ScheduledScan(**fields))

    @pytest.mark.asyncio
    async def test_arm_persists_next_run(self, store, scanner):
        """Test arming registers a timer and stores the next run."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store, frequency="daily")

        next_run = await scheduler.arm(scan)

        assert next_run == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert scheduler.is_armed(scan.id)
        assert (await store.get_scan_definition(scan.id)).next_run == next_run
        assert scheduler.active_jobs() == [{"id": scan.id, "next_run": next_run.isoformat()}]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_double_arm_keeps_one_timer(self, store, scanner):
        """Test re-arming replaces the previous timer."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store, frequency="hourly")

        await scheduler.arm(scan)
        first_timer = scheduler._timers[scan.id]
        await scheduler.arm(scan)

        await asyncio.gather(first_timer, return_exceptions=True)
        assert first_timer.cancelled()
        assert scheduler._timers[scan.id] is not first_timer
        assert len(scheduler.active_jobs()) == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_inactive_scan_not_armed(self, store, scanner):
        """Test inactive scans stay idle with no next run."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store, frequency="daily", active=False)

        assert await scheduler.arm(scan) is None
        assert not scheduler.is_armed(scan.id)
        assert (await store.get_scan_definition(scan.id)).next_run is None

    @pytest.mark.asyncio
    async def test_deactivate_disarms(self, store, scanner):
        """Test arming an active scan again as inactive removes its timer."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store, frequency="daily")
        await scheduler.arm(scan)

        scan.active = False
        await scheduler.arm(scan)

        assert not scheduler.is_armed(scan.id)
        assert scheduler.active_jobs() == []
        assert (await store.get_scan_definition(scan.id)).next_run is None

    @pytest.mark.asyncio
    async def test_arm_invalid_expression(self, store, scanner):
        """Test a broken frequency is rejected and leaves the scan idle."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store, frequency="every tuesday")

        with pytest.raises(InvalidScheduleExpression):
            await scheduler.arm(scan)

        assert not scheduler.is_armed(scan.id)

    @pytest.mark.asyncio
    async def test_arm_requires_id(self, store, scanner):
        scheduler = Scheduler(store, scanner)

        with pytest.raises(ValueError):
            await scheduler.arm(ScheduledScan(name="web", hosts=["a.example.com"]))

    @pytest.mark.asyncio
    async def test_start_skips_invalid_definitions(self, store, scanner):
        """Test startup arms valid scans and leaves broken ones idle."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        good = await self.save(store, name="good", frequency="hourly")
        bad = await self.save(store, name="bad", frequency="not a cron")
        off = await self.save(store, name="off", frequency="daily", active=False)

        await scheduler.start()

        assert scheduler.is_armed(good.id)
        assert not scheduler.is_armed(bad.id)
        assert not scheduler.is_armed(off.id)
        assert (await store.get_scan_definition(bad.id)).next_run is None
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_disarm(self, store, scanner):
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store, frequency="daily")
        await scheduler.arm(scan)

        assert await scheduler.disarm(scan.id) is True
        assert await scheduler.disarm(scan.id) is False
        assert not scheduler.is_armed(scan.id)

    @pytest.mark.asyncio
    async def test_run_now_keeps_next_run(self, store, scanner):
        """Test an immediate run updates last_run only."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store, hosts=["a.example.com", "b.example.com"], ports=[443, 8443])
        next_run = await scheduler.arm(scan)

        records = await scheduler.run_now(scan.id)

        assert len(records) == 4
        stored = await store.get_scan_definition(scan.id)
        assert stored.last_run == NOON
        assert stored.next_run == next_run
        assert len(await store.list_certificates()) == 4
        assert scanner.calls == [(["a.example.com", "b.example.com"], [443, 8443])]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_run_now_unknown_scan(self, store, scanner):
        scheduler = Scheduler(store, scanner)

        with pytest.raises(ScanNotFound):
            await scheduler.run_now(42)

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self, store, scanner):
        """Test a second run for the same scan is rejected while one is in flight."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store)
        scanner.gate = asyncio.Event()
        scanner.started = asyncio.Event()

        first = asyncio.create_task(scheduler.run_now(scan.id))
        await scanner.started.wait()
        assert scheduler.is_running(scan.id)

        with pytest.raises(ScanAlreadyRunning):
            await scheduler.run_now(scan.id)

        scanner.gate.set()
        assert len(await first) == 1
        assert not scheduler.is_running(scan.id)

    @pytest.mark.asyncio
    async def test_timer_fires_and_rearms(self, store, scanner):
        """Test a firing runs the scan and schedules the following run."""
        clock = OffsetClock(datetime(2024, 1, 1, 0, 59, 59, 700000, tzinfo=timezone.utc))
        scheduler = Scheduler(store, scanner, clock=clock, max_sleep=0.05)
        scan = await self.save(store, frequency="hourly")

        assert await scheduler.arm(scan) == datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc)

        async def fired():
            stored = await store.get_scan_definition(scan.id)
            return stored.last_run is not None

        await wait_until(fired)

        stored = await store.get_scan_definition(scan.id)
        assert stored.next_run == datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc)
        assert len(scanner.calls) == 1
        assert len(await store.list_certificates()) == 1
        assert scheduler.is_armed(scan.id)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_firing_error_keeps_timer(self, store):
        """Test a failing run is contained and the timer stays armed."""

        class BrokenScanner(FakeScanner):
            async def scan(self, hosts, ports):
                self.calls.append((list(hosts), list(ports)))
                raise RuntimeError("scanner exploded")

        scanner = BrokenScanner()
        clock = OffsetClock(datetime(2024, 1, 1, 0, 59, 59, 800000, tzinfo=timezone.utc))
        scheduler = Scheduler(store, scanner, clock=clock, max_sleep=0.05)
        scan = await self.save(store, frequency="hourly")
        await scheduler.arm(scan)

        async def rescheduled():
            stored = await store.get_scan_definition(scan.id)
            return stored.next_run == datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc)

        await wait_until(rescheduled)

        assert len(scanner.calls) == 1
        assert scheduler.is_armed(scan.id)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_disarm_during_firing(self, store, scanner):
        """Test a run in progress completes after disarm but does not re-arm."""
        clock = OffsetClock(datetime(2024, 1, 1, 0, 59, 59, 800000, tzinfo=timezone.utc))
        scheduler = Scheduler(store, scanner, clock=clock, max_sleep=0.05)
        scan = await self.save(store, frequency="hourly")
        first_next_run = await scheduler.arm(scan)
        scanner.gate = asyncio.Event()
        scanner.started = asyncio.Event()

        await asyncio.wait_for(scanner.started.wait(), timeout=3)
        assert await scheduler.disarm(scan.id) is True

        scanner.gate.set()

        async def finished():
            return not scheduler.is_running(scan.id) and not scheduler._firings

        await wait_until(finished)

        stored = await store.get_scan_definition(scan.id)
        assert stored.last_run is not None
        assert stored.next_run == first_next_run
        assert not scheduler.is_armed(scan.id)
        assert len(await store.list_certificates()) == 1

    @pytest.mark.asyncio
    async def test_run_now_then_timer_fires_on_schedule(self, store, scanner):
        """Test an immediate run leaves the pending timer firing at its original time."""
        clock = OffsetClock(datetime(2024, 1, 1, 0, 59, 59, 600000, tzinfo=timezone.utc))
        scheduler = Scheduler(store, scanner, clock=clock, max_sleep=0.05)
        scan = await self.save(store, frequency="hourly")
        first_next_run = await scheduler.arm(scan)

        await scheduler.run_now(scan.id)

        assert len(scanner.calls) == 1
        assert (await store.get_scan_definition(scan.id)).next_run == first_next_run

        async def fired_on_schedule():
            stored = await store.get_scan_definition(scan.id)
            return stored.next_run == datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc)

        await wait_until(fired_on_schedule)

        assert len(scanner.calls) == 2
        assert scheduler.is_armed(scan.id)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_arm_missing_definition(self, store, scanner):
        """Test arming a scan that is no longer stored leaves it idle."""
        scheduler = Scheduler(store, scanner, clock=lambda: NOON)
        scan = await self.save(store, frequency="hourly")
        await store.delete_scan_definition(scan.id)

        assert await scheduler.arm(scan) is None
        assert not scheduler.is_armed(scan.id)
        assert scheduler.active_jobs() == []

    @pytest.mark.asyncio
    async def test_timer_dropped_after_definition_deleted(self, scanner):
        """Test a firing for a deleted definition removes its timer instead of retrying."""

        class CountingStore(JsonFileStore):
            def __init__(self):
                super().__init__()
                self.lookups = 0

            async def get_scan_definition(self, scan_id):
                self.lookups += 1
                return await super().get_scan_definition(scan_id)

        store = CountingStore()
        clock = OffsetClock(datetime(2024, 1, 1, 0, 59, 59, 800000, tzinfo=timezone.utc))
        scheduler = Scheduler(store, scanner, clock=clock, max_sleep=0.05)
        scan = await self.save(store, frequency="hourly")
        await scheduler.arm(scan)
        await store.delete_scan_definition(scan.id)

        async def dropped():
            return not scheduler.is_armed(scan.id)

        await wait_until(dropped)
        lookups = store.lookups
        await asyncio.sleep(0.3)

        assert store.lookups == lookups
        assert scanner.calls == []
        assert scheduler.active_jobs() == []
        await scheduler.stop()
