"""
Scan orchestration.

Owns the single-running-job invariant. A full scan discovers hosts over
an address range; a refresh re-probes hosts already in the store. Both
hold the ScanLock for their whole run, so a second start fails with
ConflictError without touching any state.

Flow of a job:
    resolve targets -> probe (batches) -> merge attributes -> store
    -> release lock -> publish summary -> optional port scan hand-off
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional, Sequence

from ._types import (
    HostRecord,
    HostStatus,
    JobStatus,
    ProbeMode,
    ProbeResult,
    ScanJob,
    ScanKind,
    ScanTrigger,
    SourceId,
    now_utc,
)
from .config import detect_network_range
from .errors import ConflictError, NotFoundError, ValidationError
from .host_db import HostDatabase
from .merger import PriorityMerger
from .port_scanner import PortScanner
from .prober import HostProber, extract_mac
from .range_parser import DEFAULT_MAX_HOSTS, ScanRange, is_valid_ipv4, parse_range
from .settings import RuntimeSettings
from .sources import HostSource, InventorySource, ScannerSource

logger = logging.getLogger(__name__)


class ScanLock:
    """
    Non-blocking exclusive lock over scan execution.

    try_acquire() never waits; locked and holder can be read without
    side effects.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._holder: Optional[str] = None

    def try_acquire(self, holder: str) -> bool:
        if not self._lock.acquire(blocking=False):
            return False
        self._holder = holder
        return True

    def release(self) -> None:
        self._holder = None
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> Optional[str]:
        return self._holder


class ScanOrchestrator:
    """Runs full scans and refreshes, one at a time."""

    def __init__(
        self,
        db: HostDatabase,
        settings: RuntimeSettings,
        prober: HostProber,
        port_scanner: PortScanner,
        inventories: Sequence[InventorySource] = (),
        max_scan_hosts: int = DEFAULT_MAX_HOSTS,
        history_retention_days: int = 30,
        detect_range: Callable[[], Optional[str]] = detect_network_range,
    ):
        self.db = db
        self.settings = settings
        self.prober = prober
        self.port_scanner = port_scanner
        self.inventories = list(inventories)
        self.scanner_source = ScannerSource()
        self.max_scan_hosts = max_scan_hosts
        self.history_retention_days = history_retention_days
        self._detect_range = detect_range

        self._lock = ScanLock()
        self._job: Optional[ScanJob] = None
        self._completed: Optional[ScanJob] = None
        self._cancel = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked

    @property
    def sources(self) -> list[HostSource]:
        return [*self.inventories, self.scanner_source]

    # -------------------------------------------------------------------------
    # Target resolution
    # -------------------------------------------------------------------------

    async def get_network_range(self) -> Optional[str]:
        """Auto-detect the local network range."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._detect_range)

    async def resolve_range(self, range_expr: Optional[str], auto_detect: bool = False) -> str:
        """
        Choose the range of a full scan.

        An explicit range wins. Otherwise auto-detection is tried when
        requested or configured, falling back to the stored default range.
        """
        if range_expr:
            return range_expr

        defaults = self.settings.get_default_scan()
        if auto_detect or defaults.default_auto_detect:
            detected = await self.get_network_range()
            if detected:
                return detected
            logger.warning("Network range auto-detection failed, using default range")

        if defaults.default_range:
            return defaults.default_range

        raise ValidationError("No scan range given and none could be detected")

    # -------------------------------------------------------------------------
    # Full scan
    # -------------------------------------------------------------------------

    async def start_scan(
        self,
        range_expr: Optional[str] = None,
        auto_detect: bool = False,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> str:
        """
        Start a full scan in the background.

        Returns:
            Job id

        Raises:
            ConflictError: If a job is already running
            ValidationError: If the range is invalid or too large
        """
        if self._lock.locked:
            raise ConflictError(f"A {self._lock.holder} scan is already running")

        expression = await self.resolve_range(range_expr, auto_detect)
        scan_range = parse_range(expression, max_hosts=self.max_scan_hosts)

        if not self._lock.try_acquire(ScanKind.FULL.value):
            raise ConflictError(f"A {self._lock.holder} scan is already running")

        job = ScanJob(
            type=ScanKind.FULL,
            trigger=trigger,
            probe_mode=ProbeMode.FULL,
            status=JobStatus.RUNNING,
            range=scan_range.expression,
        )
        self._begin(job)
        self._task = asyncio.create_task(self._run_full_scan(job, scan_range))

        logger.info(f"Full scan {job.id} started on {scan_range.expression} ({trigger.value})")
        return job.id

    async def run_full_scan(
        self,
        range_expr: Optional[str] = None,
        auto_detect: bool = False,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> ScanJob:
        """Start a full scan and wait for it to finish."""
        await self.start_scan(range_expr, auto_detect, trigger)
        job = self._job
        await self.wait()
        return job

    async def wait(self) -> None:
        """Wait for the background full scan, if any."""
        if self._task:
            await self._task

    async def _run_full_scan(self, job: ScanJob, scan_range: ScanRange) -> None:
        online_ips: list[str] = []
        try:
            banned = set(self.db.get_banned_ips())
            targets = [ip for ip in scan_range if ip not in banned]
            job.total = len(targets)
            if len(targets) < len(scan_range):
                logger.info(f"Skipping {len(scan_range) - len(targets)} banned IPs")

            merger = await self._prepare_merge()

            def on_result(result: ProbeResult) -> None:
                self._apply_result(job, result, merger, online_ips)

            await self.prober.probe_all(targets, ProbeMode.FULL, self._cancel, on_result)

        except Exception as e:
            logger.error(f"Full scan {job.id} failed: {e}")
            job.error = str(e)

        finally:
            self._finish(job)

        logger.info(
            f"Full scan {job.id} {job.status.value}: {job.scanned}/{job.total} scanned, "
            f"{job.found} new, {job.updated} updated, {job.online} online "
            f"in {job.duration_ms}ms"
        )

        if job.status == JobStatus.COMPLETED:
            self._purge_history()
            schedule = self.settings.get_schedule()
            if schedule.full_scan.port_scan_enabled and online_ips:
                if self.port_scanner.start(online_ips):
                    logger.info(f"Port scan handed off for {len(online_ips)} online hosts")

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(
        self,
        scan_type: ProbeMode = ProbeMode.QUICK,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> dict:
        """
        Re-probe all known, non-banned hosts and wait for the result.

        Returns:
            {"scanned", "online", "offline", "duration"} (duration in ms)

        Raises:
            ConflictError: If a job is already running
        """
        if not self._lock.try_acquire(ScanKind.REFRESH.value):
            raise ConflictError(f"A {self._lock.holder} scan is already running")

        job = ScanJob(
            type=ScanKind.REFRESH,
            trigger=trigger,
            probe_mode=scan_type,
            status=JobStatus.RUNNING,
        )
        self._begin(job)

        try:
            targets = self.db.get_known_ips()
            job.total = len(targets)
            logger.info(f"Refreshing {len(targets)} known hosts ({scan_type.value}, {trigger.value})")

            # Quick probes carry no attributes to merge
            merger = None
            if scan_type == ProbeMode.FULL:
                merger = await self._prepare_merge()

            def on_result(result: ProbeResult) -> None:
                self._apply_result(job, result, merger, [])

            await self.prober.probe_all(targets, scan_type, self._cancel, on_result)

        except Exception as e:
            logger.error(f"Refresh {job.id} failed: {e}")
            job.error = str(e)

        finally:
            self._finish(job)

        logger.info(
            f"Refresh completed: {job.scanned} scanned, {job.online} online, "
            f"{job.offline} offline in {job.duration_ms}ms"
        )
        return {
            "scanned": job.scanned,
            "online": job.online,
            "offline": job.offline,
            "duration": job.duration_ms,
        }

    # -------------------------------------------------------------------------
    # Job lifecycle
    # -------------------------------------------------------------------------

    def _begin(self, job: ScanJob) -> None:
        self._cancel = asyncio.Event()
        self._completed = None
        self._job = job

    def _finish(self, job: ScanJob) -> None:
        if job.error:
            job.status = JobStatus.STOPPED
        elif self._cancel.is_set():
            job.status = JobStatus.STOPPED
        else:
            job.status = JobStatus.COMPLETED
        job.completed_at = now_utc()
        job.duration_ms = int((job.completed_at - job.started_at).total_seconds() * 1000)
        self.scanner_source.clear()
        self._completed = job
        self._job = None
        self._lock.release()

    def stop_scan(self) -> bool:
        """
        Request cancellation of the running job.

        Probes already in flight finish; the job ends as stopped.
        """
        if self._job is None:
            return False
        self._cancel.set()
        logger.info(f"Stop requested for {self._job.type.value} scan {self._job.id}")
        return True

    def get_progress(self) -> Optional[dict]:
        """
        Running job, or the completed summary exactly once.
        """
        if self._job is not None:
            progress = self._job.to_dict()
            total = self._job.total
            progress["progress"] = round(self._job.scanned * 100 / total) if total else 0
            return progress

        if self._completed is not None:
            summary = self._completed.to_dict()
            summary["progress"] = 100
            self._completed = None
            return summary

        return None

    def _purge_history(self) -> None:
        if self.history_retention_days <= 0:
            return
        try:
            self.db.purge_history(self.history_retention_days)
        except Exception as e:
            logger.error(f"History purge failed: {e}")

    # -------------------------------------------------------------------------
    # Per-host application of probe results
    # -------------------------------------------------------------------------

    async def _prepare_merge(self) -> PriorityMerger:
        for inventory in self.inventories:
            await inventory.refresh_if_stale()
        self.scanner_source.clear()
        return PriorityMerger(self.settings.get_plugin_priority())

    def _merge_attributes(
        self,
        result: ProbeResult,
        existing: Optional[HostRecord],
        merger: PriorityMerger,
    ) -> dict:
        self.scanner_source.record(result)
        hostname, hostname_source = merger.resolve(
            "hostname",
            result.ip,
            existing.hostname if existing else None,
            existing.hostname_source if existing else None,
            self.sources,
        )
        vendor, vendor_source = merger.resolve(
            "vendor",
            result.ip,
            existing.vendor if existing else None,
            existing.vendor_source if existing else None,
            self.sources,
        )
        return {
            "mac": result.mac,
            "hostname": hostname,
            "hostname_source": hostname_source,
            "vendor": vendor,
            "vendor_source": vendor_source,
        }

    def _apply_result(
        self,
        job: ScanJob,
        result: ProbeResult,
        merger: Optional[PriorityMerger],
        online_ips: list[str],
    ) -> None:
        """Store one probe result and update the job counters."""
        job.scanned += 1
        try:
            existing = self.db.get_host(result.ip)

            if not result.online:
                job.offline += 1
                if existing is None:
                    return
                was_online = existing.status == HostStatus.ONLINE
                if job.type == ScanKind.FULL and not was_online:
                    return
                self.db.mark_offline(result.ip)
                self.db.add_history_entry(result.ip, HostStatus.OFFLINE)
                if job.type == ScanKind.FULL:
                    job.updated += 1
                return

            job.online += 1
            online_ips.append(result.ip)

            attributes = {}
            if merger is not None:
                attributes = self._merge_attributes(result, existing, merger)

            record, is_new = self.db.upsert_host(
                result.ip,
                HostStatus.ONLINE,
                ping_latency_ms=result.latency_ms,
                **attributes,
            )
            if record is None:
                return

            self.db.add_history_entry(result.ip, HostStatus.ONLINE, result.latency_ms)

            if is_new:
                job.found += 1
            else:
                job.updated += 1

            summary = job.detection_summary
            if record.mac and not (existing and existing.mac):
                summary.mac += 1
            if record.vendor and not (existing and existing.vendor):
                summary.vendor += 1
            if record.hostname and not (existing and existing.hostname):
                summary.hostname += 1

        except Exception as e:
            logger.error(f"Failed to store result for {result.ip}: {e}")

    # -------------------------------------------------------------------------
    # Single host operations
    # -------------------------------------------------------------------------

    def _check_target(self, ip: str) -> None:
        if not is_valid_ipv4(ip):
            raise ValidationError(f"Invalid IP address: {ip}", token=ip)
        if self.db.is_banned(ip):
            raise ValidationError(f"IP {ip} is banned", token=ip)

    async def scan_single(
        self,
        ip: str,
        mac: Optional[str] = None,
        hostname: Optional[str] = None,
    ) -> HostRecord:
        """
        Add a host by hand.

        Always runs a full probe. A given MAC or hostname wins over
        probed values and is stored with source "manual".
        """
        self._check_target(ip)
        manual_mac = None
        if mac:
            manual_mac = extract_mac(mac)
            if manual_mac is None:
                raise ValidationError(f"Invalid MAC address: {mac}", token=mac)

        result = await self.prober.probe_host(ip, ProbeMode.FULL)
        if manual_mac:
            result.mac = manual_mac
            if self.prober.vendors:
                result.vendor = self.prober.vendors.lookup(manual_mac)

        merger = await self._prepare_merge()
        # A running scan may have written ip while we were probing
        existing = self.db.get_host(ip)
        attributes = self._merge_attributes(result, existing, merger)
        self.scanner_source.clear()
        if hostname and hostname.strip():
            attributes["hostname"] = hostname.strip()
            attributes["hostname_source"] = SourceId.MANUAL.value

        status = HostStatus.ONLINE if result.online else HostStatus.OFFLINE
        record, _ = self.db.upsert_host(
            ip, status, ping_latency_ms=result.latency_ms, **attributes
        )
        self.db.add_history_entry(ip, status, result.latency_ms)
        logger.info(f"Manually added {ip} ({status.value})")
        return record

    async def rescan(self, ip: str) -> HostRecord:
        """
        Full probe of one stored host, followed by a port scan if it is online.

        Raises:
            ValidationError: Invalid or banned IP
            NotFoundError: IP not in the store
        """
        self._check_target(ip)
        if self.db.get_host(ip) is None:
            raise NotFoundError(f"Host {ip} not found")

        result = await self.prober.probe_host(ip, ProbeMode.FULL)
        if result.online:
            merger = await self._prepare_merge()
            existing = self.db.get_host(ip)
            attributes = self._merge_attributes(result, existing, merger)
            self.scanner_source.clear()
            self.db.upsert_host(
                ip, HostStatus.ONLINE, ping_latency_ms=result.latency_ms, **attributes
            )
            self.db.add_history_entry(ip, HostStatus.ONLINE, result.latency_ms)
            if not self.port_scanner.start([ip]):
                logger.info(f"Port scan busy, skipping port scan of {ip}")
        else:
            self.db.mark_offline(ip)
            self.db.add_history_entry(ip, HostStatus.OFFLINE)

        logger.info(f"Rescanned {ip}: {'online' if result.online else 'offline'}")
        return self.db.get_host(ip)
