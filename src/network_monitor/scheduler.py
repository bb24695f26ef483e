"""
Automatic scan scheduler.

Two independent interval timers, full scan and refresh, driven by one
loop. Each timer's deadline is (last automatic run or anchor) +
interval, where the anchor is when the scheduler started or the
sub-schedule last changed. The loop sleeps until the earliest deadline,
at most one tick, and reschedule() wakes it early.

Configuration is re-read on every tick, so changes apply without a
restart. Disabling a schedule never cancels a job that is running.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ._types import ProbeMode, ScanKind, ScanTrigger, ScheduleConfig, now_utc
from .errors import ConflictError, NetworkMonitorError
from .orchestrator import ScanOrchestrator
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

TICK_SECONDS = 60


def next_deadline(
    last_auto: Optional[datetime],
    interval_minutes: int,
    anchor: datetime,
) -> datetime:
    """When a sub-schedule is next due."""
    return (last_auto or anchor) + timedelta(minutes=interval_minutes)


class ScanScheduler:
    """Triggers full scans and refreshes on their configured intervals."""

    def __init__(
        self,
        orchestrator: ScanOrchestrator,
        settings: RuntimeSettings,
        tick_seconds: float = TICK_SECONDS,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.orchestrator = orchestrator
        self.settings = settings
        self.tick_seconds = tick_seconds
        self._clock = clock

        self._running = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        started = clock()
        self._anchors: dict[str, datetime] = {
            ScanKind.FULL.value: started,
            ScanKind.REFRESH.value: started,
        }
        self._seen: dict[str, tuple] = {}
        self._retry_after: dict[str, datetime] = {}

    async def start(self) -> None:
        """Start the scheduler loop."""
        logger.info("Starting scan scheduler")
        self._running = True
        now = self._clock()
        for kind in self._anchors:
            self._anchors[kind] = now
        self._task = asyncio.create_task(self._main_loop())

    async def stop(self) -> None:
        """Stop the scheduler loop. A running scan is left to finish."""
        logger.info("Stopping scan scheduler")
        self._running = False
        self._wake.set()
        if self._task:
            await self._task
            self._task = None

    def reschedule(self) -> None:
        """Wake the loop so configuration changes apply now."""
        self._wake.set()

    # -------------------------------------------------------------------------
    # Deadlines
    # -------------------------------------------------------------------------

    def _track_changes(self, config: ScheduleConfig, now: datetime) -> None:
        """Re-anchor a sub-schedule when its settings change."""
        current = {
            ScanKind.FULL.value: (config.full_scan.enabled, config.full_scan.interval_minutes),
            ScanKind.REFRESH.value: (config.refresh.enabled, config.refresh.interval_minutes),
        }
        for kind, values in current.items():
            if kind in self._seen and self._seen[kind] != values:
                self._anchors[kind] = now
                self._retry_after.pop(kind, None)
            self._seen[kind] = values

    def _deadline(self, kind: str, interval_minutes: int) -> datetime:
        deadline = next_deadline(
            self.settings.get_last_auto_time(kind),
            interval_minutes,
            self._anchors[kind],
        )
        retry = self._retry_after.get(kind)
        if retry and retry > deadline:
            return retry
        return deadline

    def next_deadlines(self) -> dict[str, Optional[str]]:
        """Next due time per sub-schedule, None when it will not run."""
        config = self.settings.get_schedule()
        result: dict[str, Optional[str]] = {
            ScanKind.FULL.value: None,
            ScanKind.REFRESH.value: None,
        }
        if not config.enabled:
            return result
        if config.full_scan.enabled:
            result[ScanKind.FULL.value] = self._deadline(
                ScanKind.FULL.value, config.full_scan.interval_minutes
            ).isoformat()
        if config.refresh.enabled:
            result[ScanKind.REFRESH.value] = self._deadline(
                ScanKind.REFRESH.value, config.refresh.interval_minutes
            ).isoformat()
        return result

    def _sleep_seconds(self, config: ScheduleConfig, now: datetime) -> float:
        if not config.enabled:
            return self.tick_seconds
        deadlines = []
        if config.full_scan.enabled:
            deadlines.append(self._deadline(ScanKind.FULL.value, config.full_scan.interval_minutes))
        if config.refresh.enabled:
            deadlines.append(self._deadline(ScanKind.REFRESH.value, config.refresh.interval_minutes))
        if not deadlines:
            return self.tick_seconds
        remaining = (min(deadlines) - now).total_seconds()
        return max(1.0, min(remaining, self.tick_seconds))

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def _main_loop(self) -> None:
        """Main scheduler loop."""
        logger.info("Scheduler loop started")

        await self._startup_refresh()

        while self._running:
            config = ScheduleConfig()
            try:
                config = self.settings.get_schedule()
                await self.tick(config)
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")

            if not self._running:
                break

            try:
                await asyncio.wait_for(
                    self._wake.wait(),
                    timeout=self._sleep_seconds(config, self._clock()),
                )
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

        logger.info("Scheduler loop stopped")

    async def _startup_refresh(self) -> None:
        """Quick refresh at startup when automation is on and hosts are known."""
        try:
            config = self.settings.get_schedule()
            if not config.enabled or not self.orchestrator.db.get_known_ips():
                return
            logger.info("Running startup refresh of known hosts")
            await self.orchestrator.refresh(ProbeMode.QUICK, ScanTrigger.AUTO)
        except ConflictError:
            logger.warning("Startup refresh skipped: a scan is already running")
        except Exception as e:
            logger.error(f"Startup refresh failed: {e}")

    async def tick(self, config: Optional[ScheduleConfig] = None) -> list[str]:
        """
        Run whatever is due.

        Returns: kinds of scan that ran
        """
        config = config or self.settings.get_schedule()
        now = self._clock()
        self._track_changes(config, now)

        ran: list[str] = []
        if not config.enabled:
            return ran

        full = ScanKind.FULL.value
        if config.full_scan.enabled and now >= self._deadline(full, config.full_scan.interval_minutes):
            if await self._run_full(config, now):
                ran.append(full)

        refresh = ScanKind.REFRESH.value
        if config.refresh.enabled and now >= self._deadline(refresh, config.refresh.interval_minutes):
            if await self._run_refresh(config, now):
                ran.append(refresh)

        return ran

    async def _run_full(self, config: ScheduleConfig, now: datetime) -> bool:
        logger.info("Running scheduled full scan")
        try:
            job = await self.orchestrator.run_full_scan(trigger=ScanTrigger.AUTO)
        except ConflictError:
            logger.warning("Scheduled full scan skipped: a scan is already running")
            return False
        except NetworkMonitorError as e:
            logger.error(f"Scheduled full scan failed: {e}")
            self._retry_after[ScanKind.FULL.value] = now + timedelta(
                minutes=config.full_scan.interval_minutes
            )
            return False

        self.settings.record_auto_run(
            ScanKind.FULL.value, ProbeMode.FULL.value, job.range, at=self._clock()
        )
        return True

    async def _run_refresh(self, config: ScheduleConfig, now: datetime) -> bool:
        scan_type = config.refresh.scan_type
        logger.info(f"Running scheduled {scan_type.value} refresh")
        try:
            await self.orchestrator.refresh(scan_type, ScanTrigger.AUTO)
        except ConflictError:
            logger.warning("Scheduled refresh skipped: a scan is already running")
            return False

        self.settings.record_auto_run(
            ScanKind.REFRESH.value, scan_type.value, None, at=self._clock()
        )
        return True
