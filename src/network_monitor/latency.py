"""
Latency monitoring.

Operators opt hosts in one by one. Every enabled host is pinged on a
fixed interval, independently of scans, and samples are kept in memory
for the retention window. A None latency records a lost packet.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from ._types import LatencySample, now_utc
from .errors import ValidationError
from .host_db import HostDatabase
from .prober import HostProber
from .range_parser import is_valid_ipv4

logger = logging.getLogger(__name__)


def _mean(values: list[float]) -> Optional[float]:
    if not values:
        return None
    return round(sum(values) / len(values), 2)


class LatencyMonitor:
    """Per-host latency sampling with rolling statistics."""

    def __init__(
        self,
        db: HostDatabase,
        prober: HostProber,
        interval_seconds: int = 15,
        retention_hours: int = 24,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.db = db
        self.prober = prober
        self.interval_seconds = interval_seconds
        self.retention = timedelta(hours=retention_hours)
        self._clock = clock

        # Retention window at the sampling rate, with headroom for manual samples
        self._max_samples = max(1, int(self.retention.total_seconds() // max(1, interval_seconds))) * 2
        self._buffers: dict[str, deque[LatencySample]] = {}

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Opt-in flags
    # -------------------------------------------------------------------------

    def enable(self, ip: str) -> None:
        if not is_valid_ipv4(ip):
            raise ValidationError(f"Invalid IP address: {ip}", token=ip)
        self.db.set_latency_monitoring(ip, True)
        self._buffers.setdefault(ip, deque(maxlen=self._max_samples))
        logger.info(f"Latency monitoring enabled for {ip}")

    def disable(self, ip: str) -> None:
        """Stop sampling ip and drop its samples."""
        if not is_valid_ipv4(ip):
            raise ValidationError(f"Invalid IP address: {ip}", token=ip)
        self.db.set_latency_monitoring(ip, False)
        self._buffers.pop(ip, None)
        logger.info(f"Latency monitoring disabled for {ip}")

    def enabled_ips(self) -> list[str]:
        return self.db.get_latency_monitored_ips()

    def status(self, ips: Iterable[str]) -> dict[str, bool]:
        enabled = set(self.enabled_ips())
        return {ip: ip in enabled for ip in ips}

    # -------------------------------------------------------------------------
    # Samples
    # -------------------------------------------------------------------------

    def _evict(self, ip: str, now: datetime) -> None:
        buffer = self._buffers.get(ip)
        if not buffer:
            return
        cutoff = now - self.retention
        while buffer and buffer[0].timestamp < cutoff:
            buffer.popleft()

    def record_sample(
        self,
        ip: str,
        latency_ms: Optional[float],
        at: Optional[datetime] = None,
    ) -> Optional[LatencySample]:
        """
        Append a sample (None = timeout) and drop samples past retention.

        Samples for hosts that are not enabled are discarded and None is
        returned.
        """
        if ip not in self.enabled_ips():
            logger.debug(f"[{ip}] sample discarded, monitoring disabled")
            return None
        sample = LatencySample(ip=ip, timestamp=at or self._clock(), latency_ms=latency_ms)
        buffer = self._buffers.setdefault(ip, deque(maxlen=self._max_samples))
        buffer.append(sample)
        self._evict(ip, self._clock())
        return sample

    def measurements(self, ip: str) -> list[LatencySample]:
        self._evict(ip, self._clock())
        return list(self._buffers.get(ip, ()))

    def statistics(self, ip: str) -> dict[str, Any]:
        """
        Full statistics for one host.

        avg1h covers the trailing hour, max/min/avg24h the retained
        window. Lost packets count toward packet_loss_percent only.
        """
        now = self._clock()
        samples = self.measurements(ip)
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(hours=24)

        latencies = [s.latency_ms for s in samples if s.latency_ms is not None]
        last_hour = [
            s.latency_ms for s in samples
            if s.latency_ms is not None and s.timestamp >= hour_ago
        ]
        last_day = [
            s.latency_ms for s in samples
            if s.latency_ms is not None and s.timestamp >= day_ago
        ]
        lost = sum(1 for s in samples if s.latency_ms is None)

        return {
            "avg1h": _mean(last_hour),
            "max": max(latencies) if latencies else None,
            "min": min(latencies) if latencies else None,
            "avg24h": _mean(last_day),
            "packet_loss_percent": round(lost * 100 / len(samples), 2) if samples else 0,
            "total_measurements": len(samples),
        }

    def stats(self, ips: Iterable[str]) -> dict[str, dict[str, Optional[float]]]:
        """avg1h and max per host."""
        result = {}
        for ip in ips:
            full = self.statistics(ip)
            result[ip] = {"avg1h": full["avg1h"], "max": full["max"]}
        return result

    # -------------------------------------------------------------------------
    # Sampling loop
    # -------------------------------------------------------------------------

    async def sample_once(self) -> int:
        """Ping every enabled host once. Returns the number of samples taken."""
        ips = self.enabled_ips()
        if not ips:
            return 0

        latencies = await asyncio.gather(*(self.prober.measure_latency(ip) for ip in ips))

        # Hosts disabled while the pings were in flight are dropped
        taken = 0
        for ip, latency in zip(ips, latencies):
            if self.record_sample(ip, latency) is None:
                continue
            taken += 1
            if latency is None:
                logger.debug(f"[{ip}] packet loss")
        return taken

    async def start(self) -> None:
        """Start the sampling loop."""
        logger.info(f"Starting latency monitor (every {self.interval_seconds}s)")
        self._running = True
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._main_loop())

    async def stop(self) -> None:
        """Stop the sampling loop."""
        logger.info("Stopping latency monitor")
        self._running = False
        self._shutdown_event.set()
        if self._task:
            await self._task
            self._task = None

    async def _main_loop(self) -> None:
        while self._running:
            try:
                await self.sample_once()
            except Exception as e:
                logger.error(f"Error in latency loop: {e}")

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.interval_seconds,
                )
                break
            except asyncio.TimeoutError:
                pass
