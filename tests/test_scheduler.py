"""Tests for the automatic scan scheduler."""

import pytest
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from network_monitor._types import ProbeMode, ScanJob, ScanTrigger, ScheduleConfig
from network_monitor.errors import ConflictError, ValidationError
from network_monitor.host_db import HostDatabase
from network_monitor.scheduler import ScanScheduler, next_deadline
from network_monitor.settings import RuntimeSettings


START = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings():
    """Create runtime settings backed by a temporary database."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield RuntimeSettings(HostDatabase(db_path))

    # Cleanup
    db_path.unlink(missing_ok=True)
    db_path.with_suffix(".db-wal").unlink(missing_ok=True)
    db_path.with_suffix(".db-shm").unlink(missing_ok=True)


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.run_full_scan = AsyncMock(return_value=ScanJob(range="192.168.1.0/24"))
    orchestrator.refresh = AsyncMock(return_value={"scanned": 0, "online": 0, "offline": 0, "duration": 0})
    return orchestrator


def enable(settings: RuntimeSettings, full=False, refresh=False, full_interval=60, refresh_interval=5):
    config = ScheduleConfig(enabled=True)
    config.full_scan.enabled = full
    config.full_scan.interval_minutes = full_interval
    config.refresh.enabled = refresh
    config.refresh.interval_minutes = refresh_interval
    settings.save_schedule(config)


class TestNextDeadline:
    """Tests for deadline arithmetic."""

    def test_from_anchor(self):
        """Without a previous run the anchor is used."""
        assert next_deadline(None, 15, START) == START + timedelta(minutes=15)

    def test_from_last_run(self):
        """The last automatic run takes precedence over the anchor."""
        last = START + timedelta(hours=2)
        assert next_deadline(last, 60, START) == last + timedelta(hours=1)


class TestTick:
    """Tests for a single scheduler tick."""

    @pytest.mark.asyncio
    async def test_master_switch_off(self, settings, orchestrator):
        """Nothing runs while the master switch is off."""
        clock = FakeClock(START)
        scheduler = ScanScheduler(orchestrator, settings, clock=clock)
        clock.advance(days=2)

        assert await scheduler.tick() == []
        orchestrator.run_full_scan.assert_not_called()
        assert scheduler.next_deadlines() == {"full": None, "refresh": None}

    @pytest.mark.asyncio
    async def test_refresh_runs_when_due(self, settings, orchestrator):
        """A refresh runs once its interval has elapsed."""
        enable(settings, refresh=True, refresh_interval=5)
        clock = FakeClock(START)
        scheduler = ScanScheduler(orchestrator, settings, clock=clock)

        clock.advance(minutes=4)
        assert await scheduler.tick() == []

        clock.advance(minutes=1)
        assert await scheduler.tick() == ["refresh"]
        orchestrator.refresh.assert_awaited_once_with(ProbeMode.QUICK, ScanTrigger.AUTO)

        last = settings.get_last_auto()
        assert last["type"] == "refresh"
        assert last["scan_type"] == "quick"

    @pytest.mark.asyncio
    async def test_interval_measured_from_last_run(self, settings, orchestrator):
        """After a run the next deadline is one interval later."""
        enable(settings, refresh=True, refresh_interval=5)
        clock = FakeClock(START)
        scheduler = ScanScheduler(orchestrator, settings, clock=clock)

        clock.advance(minutes=5)
        await scheduler.tick()
        clock.advance(minutes=3)
        assert await scheduler.tick() == []

        expected = (START + timedelta(minutes=10)).isoformat()
        assert scheduler.next_deadlines()["refresh"] == expected

    @pytest.mark.asyncio
    async def test_full_scan_records_range(self, settings, orchestrator):
        """A scheduled full scan records its range as the last run."""
        enable(settings, full=True, full_interval=60)
        clock = FakeClock(START)
        scheduler = ScanScheduler(orchestrator, settings, clock=clock)

        clock.advance(minutes=60)
        assert await scheduler.tick() == ["full"]

        orchestrator.run_full_scan.assert_awaited_once_with(trigger=ScanTrigger.AUTO)
        assert settings.get_last_auto()["range"] == "192.168.1.0/24"
        assert settings.get_last_auto_time("full") == clock.now

    @pytest.mark.asyncio
    async def test_conflict_skips_run(self, settings, orchestrator):
        """A busy orchestrator means the tick is skipped, not recorded."""
        enable(settings, refresh=True, refresh_interval=5)
        orchestrator.refresh.side_effect = ConflictError("busy")
        clock = FakeClock(START)
        scheduler = ScanScheduler(orchestrator, settings, clock=clock)

        clock.advance(minutes=5)
        assert await scheduler.tick() == []
        assert settings.get_last_auto() is None

        # Still due on the next tick
        orchestrator.refresh.side_effect = None
        assert await scheduler.tick() == ["refresh"]

    @pytest.mark.asyncio
    async def test_failed_full_scan_retries_after_interval(self, settings, orchestrator):
        """A failed start waits a full interval before trying again."""
        enable(settings, full=True, full_interval=15)
        orchestrator.run_full_scan.side_effect = ValidationError("no range")
        clock = FakeClock(START)
        scheduler = ScanScheduler(orchestrator, settings, clock=clock)

        clock.advance(minutes=15)
        assert await scheduler.tick() == []
        clock.advance(minutes=1)
        assert await scheduler.tick() == []
        assert orchestrator.run_full_scan.await_count == 1

        clock.advance(minutes=14)
        await scheduler.tick()
        assert orchestrator.run_full_scan.await_count == 2

    @pytest.mark.asyncio
    async def test_config_change_reanchors(self, settings, orchestrator):
        """Changing the interval restarts the countdown from the change."""
        enable(settings, refresh=True, refresh_interval=5)
        clock = FakeClock(START)
        scheduler = ScanScheduler(orchestrator, settings, clock=clock)
        clock.advance(minutes=4)
        await scheduler.tick()

        settings.update_refresh(interval_minutes=10)
        clock.advance(minutes=2)
        assert await scheduler.tick() == []

        expected = (START + timedelta(minutes=16)).isoformat()
        assert scheduler.next_deadlines()["refresh"] == expected

    @pytest.mark.asyncio
    async def test_full_refresh_scan_type(self, settings, orchestrator):
        """The configured refresh probe mode is used."""
        enable(settings, refresh=True, refresh_interval=5)
        settings.update_refresh(scan_type=ProbeMode.FULL)
        clock = FakeClock(START)
        scheduler = ScanScheduler(orchestrator, settings, clock=clock)

        clock.advance(minutes=5)
        await scheduler.tick()

        orchestrator.refresh.assert_awaited_once_with(ProbeMode.FULL, ScanTrigger.AUTO)


class TestStartupRefresh:
    """Tests for the refresh run when the scheduler starts."""

    @pytest.mark.asyncio
    async def test_runs_with_known_hosts(self, settings, orchestrator):
        """A quick refresh runs at startup when hosts are known."""
        enable(settings)
        orchestrator.db.get_known_ips.return_value = ["192.168.1.2"]
        scheduler = ScanScheduler(orchestrator, settings, clock=FakeClock(START))

        await scheduler._startup_refresh()

        orchestrator.refresh.assert_awaited_once_with(ProbeMode.QUICK, ScanTrigger.AUTO)

    @pytest.mark.asyncio
    async def test_skipped_without_hosts(self, settings, orchestrator):
        """Nothing to refresh on an empty store."""
        enable(settings)
        orchestrator.db.get_known_ips.return_value = []
        scheduler = ScanScheduler(orchestrator, settings, clock=FakeClock(START))

        await scheduler._startup_refresh()

        orchestrator.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, settings, orchestrator):
        """The loop should start and stop cleanly."""
        orchestrator.db.get_known_ips.return_value = []
        scheduler = ScanScheduler(orchestrator, settings, tick_seconds=0.01, clock=FakeClock(START))

        await scheduler.start()
        await scheduler.stop()

        orchestrator.run_full_scan.assert_not_called()
