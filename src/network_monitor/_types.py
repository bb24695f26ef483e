"""
Type definitions for the network monitor.

These dataclasses define the core domain model for host discovery,
scan jobs, scheduling, attribute merging and latency sampling.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def now_utc() -> datetime:
    """Get current UTC timestamp (replaces deprecated datetime.utcnow())."""
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


class HostStatus(str, Enum):
    """Liveness of a host as of its last probe."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ScanKind(str, Enum):
    """Kind of scan job."""
    FULL = "full"        # Discovery over an address range
    REFRESH = "refresh"  # Re-probe of already known hosts


class ProbeMode(str, Enum):
    """How much the prober does per host."""
    QUICK = "quick"  # Liveness and latency only
    FULL = "full"    # Plus MAC, hostname and vendor


class ScanTrigger(str, Enum):
    """Who started a scan job."""
    MANUAL = "manual"
    AUTO = "auto"


class JobStatus(str, Enum):
    """Scan job lifecycle status."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"


class SourceId(str, Enum):
    """Where a hostname or vendor value came from."""
    FREEBOX = "freebox"
    UNIFI = "unifi"
    SCANNER = "scanner"
    SYSTEM = "system"
    MANUAL = "manual"
    API = "api"


# Sources that take part in priority merging (closed set)
PLUGIN_SOURCES: tuple[str, ...] = (
    SourceId.FREEBOX.value,
    SourceId.UNIFI.value,
    SourceId.SCANNER.value,
)

# Allowed schedule intervals in minutes
FULL_SCAN_INTERVALS: tuple[int, ...] = (15, 30, 60, 120, 360, 720, 1440)
REFRESH_INTERVALS: tuple[int, ...] = (5, 10, 15, 30, 60)


@dataclass
class OpenPort:
    """An open port found by the port scanner."""
    port: int
    protocol: str = "tcp"

    def to_dict(self) -> dict[str, Any]:
        return {"port": self.port, "protocol": self.protocol}


@dataclass
class HostRecord:
    """
    A host known to the monitor, keyed by IPv4 address.

    The ip never changes once the record exists; scan_count grows by one
    on every detection.
    """
    ip: str
    mac: Optional[str] = None
    hostname: Optional[str] = None
    vendor: Optional[str] = None
    hostname_source: Optional[str] = None
    vendor_source: Optional[str] = None

    status: HostStatus = HostStatus.UNKNOWN
    ping_latency_ms: Optional[int] = None

    first_seen: datetime = field(default_factory=now_utc)
    last_seen: datetime = field(default_factory=now_utc)
    scan_count: int = 1

    open_ports: list[OpenPort] = field(default_factory=list)
    last_port_scan: Optional[datetime] = None
    additional_info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "mac": self.mac,
            "hostname": self.hostname,
            "vendor": self.vendor,
            "hostname_source": self.hostname_source,
            "vendor_source": self.vendor_source,
            "status": self.status.value,
            "ping_latency_ms": self.ping_latency_ms,
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
            "scan_count": self.scan_count,
            "open_ports": [p.to_dict() for p in self.open_ports],
            "last_port_scan": _iso(self.last_port_scan),
            "additional_info": self.additional_info,
        }


@dataclass
class ProbeResult:
    """Outcome of probing a single target address."""
    ip: str
    online: bool = False
    latency_ms: Optional[int] = None
    mac: Optional[str] = None
    hostname: Optional[str] = None
    hostname_source: Optional[str] = None
    vendor: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DetectionSummary:
    """How many hosts newly acquired each attribute during a job."""
    mac: int = 0
    vendor: int = 0
    hostname: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"mac": self.mac, "vendor": self.vendor, "hostname": self.hostname}


@dataclass
class ScanJob:
    """
    A single scan run.

    Created when a scan starts and mutated only by the orchestrator.
    At most one job is RUNNING at any time.
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    type: ScanKind = ScanKind.FULL
    trigger: ScanTrigger = ScanTrigger.MANUAL
    probe_mode: ProbeMode = ProbeMode.FULL
    status: JobStatus = JobStatus.IDLE
    range: Optional[str] = None

    scanned: int = 0
    total: int = 0
    found: int = 0
    updated: int = 0
    online: int = 0
    offline: int = 0

    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    detection_summary: DetectionSummary = field(default_factory=DetectionSummary)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "trigger": self.trigger.value,
            "probe_mode": self.probe_mode.value,
            "status": self.status.value,
            "range": self.range,
            "scanned": self.scanned,
            "total": self.total,
            "found": self.found,
            "updated": self.updated,
            "online": self.online,
            "offline": self.offline,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "detection_summary": self.detection_summary.to_dict(),
            "error": self.error,
        }


@dataclass
class FullScanSchedule:
    """Full discovery sub-schedule."""
    enabled: bool = False
    interval_minutes: int = 1440
    port_scan_enabled: bool = False


@dataclass
class RefreshSchedule:
    """Refresh sub-schedule."""
    enabled: bool = False
    interval_minutes: int = 10
    scan_type: ProbeMode = ProbeMode.QUICK


@dataclass
class ScheduleConfig:
    """Automatic scan configuration with a master switch."""
    enabled: bool = False
    full_scan: FullScanSchedule = field(default_factory=FullScanSchedule)
    refresh: RefreshSchedule = field(default_factory=RefreshSchedule)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "full_scan": {
                "enabled": self.full_scan.enabled,
                "interval_minutes": self.full_scan.interval_minutes,
                "port_scan_enabled": self.full_scan.port_scan_enabled,
            },
            "refresh": {
                "enabled": self.refresh.enabled,
                "interval_minutes": self.refresh.interval_minutes,
                "scan_type": self.refresh.scan_type.value,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduleConfig":
        full = data.get("full_scan") or {}
        refresh = data.get("refresh") or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            full_scan=FullScanSchedule(
                enabled=bool(full.get("enabled", False)),
                interval_minutes=int(full.get("interval_minutes", 1440)),
                port_scan_enabled=bool(full.get("port_scan_enabled", False)),
            ),
            refresh=RefreshSchedule(
                enabled=bool(refresh.get("enabled", False)),
                interval_minutes=int(refresh.get("interval_minutes", 10)),
                scan_type=ProbeMode(refresh.get("scan_type", "quick")),
            ),
        )


@dataclass
class OverwritePolicy:
    """Whether newly merged values may replace stored ones."""
    hostname: bool = True
    vendor: bool = True


@dataclass
class PluginPriorityConfig:
    """Ordered source preference per merged field."""
    hostname_priority: list[str] = field(default_factory=lambda: list(PLUGIN_SOURCES))
    vendor_priority: list[str] = field(default_factory=lambda: list(PLUGIN_SOURCES))
    overwrite_existing: OverwritePolicy = field(default_factory=OverwritePolicy)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostname_priority": list(self.hostname_priority),
            "vendor_priority": list(self.vendor_priority),
            "overwrite_existing": {
                "hostname": self.overwrite_existing.hostname,
                "vendor": self.overwrite_existing.vendor,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PluginPriorityConfig":
        overwrite = data.get("overwrite_existing") or {}
        return cls(
            hostname_priority=list(data.get("hostname_priority") or PLUGIN_SOURCES),
            vendor_priority=list(data.get("vendor_priority") or PLUGIN_SOURCES),
            overwrite_existing=OverwritePolicy(
                hostname=bool(overwrite.get("hostname", True)),
                vendor=bool(overwrite.get("vendor", True)),
            ),
        )


@dataclass
class DefaultScanConfig:
    """Range used by a full scan when the caller gives none."""
    default_range: str = "192.168.1.0/24"
    default_auto_detect: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "default_range": self.default_range,
            "default_auto_detect": self.default_auto_detect,
        }


@dataclass
class PortScanState:
    """Progress of the background port scan."""
    active: bool = False
    current: int = 0
    total: int = 0
    current_ip: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "current": self.current,
            "total": self.total,
            "current_ip": self.current_ip,
        }


@dataclass
class LatencySample:
    """One latency measurement. latency_ms is None on timeout."""
    ip: str
    timestamp: datetime = field(default_factory=now_utc)
    latency_ms: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "timestamp": self.timestamp.isoformat(),
            "latency_ms": self.latency_ms,
            "packet_loss": self.latency_ms is None,
        }
