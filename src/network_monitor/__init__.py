"""
Network Monitor - Discovery and health monitoring of hosts on a local network.

Discovers hosts over a private address range, reconciles their hostname
and vendor from the monitor's own probing and from collaborator device
inventories (Freebox, UniFi), scans open ports in the background and
samples latency of hosts that operators opt in.

Components:
    orchestrator  - one scan job at a time (full scan or refresh)
    scheduler     - automatic full scans and refreshes on intervals
    prober        - ping, MAC, hostname and vendor resolution
    port_scanner  - background nmap connect scans
    latency       - per-host latency sampling

All data is stored locally in /var/lib/network-monitor/hosts.db.
"""

__version__ = "1.0.0"

from ._types import (
    HostRecord,
    HostStatus,
    ScanJob,
    ScanKind,
    ScanTrigger,
    JobStatus,
    ProbeMode,
    ProbeResult,
    SourceId,
    ScheduleConfig,
    PluginPriorityConfig,
    DefaultScanConfig,
    PortScanState,
    LatencySample,
)
from .errors import (
    NetworkMonitorError,
    ValidationError,
    ConflictError,
    NotFoundError,
    ProbeError,
    ExternalToolError,
)

__all__ = [
    "__version__",
    "HostRecord",
    "HostStatus",
    "ScanJob",
    "ScanKind",
    "ScanTrigger",
    "JobStatus",
    "ProbeMode",
    "ProbeResult",
    "SourceId",
    "ScheduleConfig",
    "PluginPriorityConfig",
    "DefaultScanConfig",
    "PortScanState",
    "LatencySample",
    "NetworkMonitorError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "ProbeError",
    "ExternalToolError",
]
