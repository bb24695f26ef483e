"""
Network monitor configuration.

Process-level settings (paths, API binding, probe tuning, collaborator
inventories) come from environment variables or a YAML file. Runtime
settings that operators change through the API (schedules, plugin
priority, default range) are persisted in the database instead, see
settings.py.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

_SKIPPED_INTERFACE_PREFIXES = ("lo", "docker", "veth", "br-")


def _is_docker_address(ip: str) -> bool:
    """172.17.0.0 - 172.31.255.255 are used by Docker bridge networks."""
    parts = ip.split(".")
    return len(parts) == 4 and parts[0] == "172" and 17 <= int(parts[1]) <= 31


def _address_preference(ip: str) -> int:
    if ip.startswith("192.168."):
        return 0
    if ip.startswith("10."):
        return 1
    if ipaddress.IPv4Address(ip) in ipaddress.IPv4Network("172.16.0.0/12"):
        return 2
    return 3


def parse_interface_addresses(output: str) -> list[tuple[str, str]]:
    """
    Parse `ip -4 -o addr show` output into (interface, address) pairs.

    Format: "2: eth0    inet 192.168.88.241/24 brd ... scope global eth0"
    """
    pairs = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        iface = parts[1].rstrip(":")
        for i, part in enumerate(parts):
            if part == "inet" and i + 1 < len(parts):
                pairs.append((iface, parts[i + 1].split("/")[0]))
                break
    return pairs


def select_network_range(pairs: list[tuple[str, str]]) -> Optional[str]:
    """
    Pick the LAN to scan from interface addresses.

    Skips loopback, Docker and veth interfaces, prefers 192.168.x, then
    10.x, then 172.16-31.x, and returns the enclosing /24.
    """
    candidates = []
    for iface, ip in pairs:
        if iface.startswith(_SKIPPED_INTERFACE_PREFIXES):
            continue
        try:
            address = ipaddress.IPv4Address(ip)
        except ValueError:
            continue
        if address.is_loopback or not address.is_private or _is_docker_address(ip):
            continue
        candidates.append(ip)

    if not candidates:
        return None

    best = min(candidates, key=_address_preference)
    a, b, c, _ = best.split(".")
    return f"{a}.{b}.{c}.0/24"


def detect_network_range() -> Optional[str]:
    """Auto-detect the local /24 to scan from the host's interfaces."""
    try:
        result = subprocess.run(
            ["ip", "-4", "-o", "addr", "show"],
            capture_output=True, text=True, timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not list network interfaces: {e}")
        return None

    if result.returncode != 0:
        logger.warning(f"ip addr failed: {result.stderr.strip()}")
        return None

    network_range = select_network_range(parse_interface_addresses(result.stdout))
    if network_range:
        logger.info(f"Auto-detected network range: {network_range}")
    else:
        logger.warning("Could not auto-detect network range")
    return network_range


@dataclass
class SourceConfig:
    """A collaborator inventory feeding the priority merger."""
    enabled: bool = False
    url: Optional[str] = None
    refresh_interval_seconds: int = 300


@dataclass
class MonitorConfig:
    """
    Network monitor configuration.

    Defaults match a LAN appliance: 20 concurrent pings, 2s ping
    timeout, port scans of 1-10000 with a 2 minute per-host timeout.
    """

    # Host prober
    max_concurrent_pings: int = 20
    ping_timeout_seconds: int = 2
    batch_delay_ms: int = 100
    max_scan_hosts: int = 1000

    # Port scanner
    port_scan_range: str = "1-10000"
    port_scan_timeout_seconds: int = 120
    max_port_scan_hosts: int = 200

    # Latency monitor
    latency_interval_seconds: int = 15
    latency_retention_hours: int = 24

    # History
    history_retention_days: int = 30

    # OUI vendor table
    oui_url: str = "https://standards-oui.ieee.org/oui/oui.txt"
    oui_path: Path = field(default_factory=lambda: Path("/var/lib/network-monitor/oui.txt"))
    vendor_min_count: int = 1000

    # Collaborator inventories
    sources: dict[str, SourceConfig] = field(default_factory=lambda: {
        "freebox": SourceConfig(),
        "unifi": SourceConfig(),
    })

    # API server
    api_host: str = "127.0.0.1"
    api_port: int = 8090

    # Database
    db_path: Path = field(default_factory=lambda: Path("/var/lib/network-monitor/hosts.db"))

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables."""
        config = cls()

        config.max_concurrent_pings = int(os.getenv("MAX_CONCURRENT_PINGS", "20"))
        config.ping_timeout_seconds = int(os.getenv("PING_TIMEOUT", "2"))
        config.max_scan_hosts = int(os.getenv("MAX_SCAN_HOSTS", "1000"))

        config.port_scan_range = os.getenv("PORT_SCAN_RANGE", "1-10000")
        config.port_scan_timeout_seconds = int(os.getenv("PORT_SCAN_TIMEOUT", "120"))

        config.latency_interval_seconds = int(os.getenv("LATENCY_INTERVAL", "15"))
        config.history_retention_days = int(os.getenv("HISTORY_RETENTION_DAYS", "30"))

        if oui_url := os.getenv("OUI_URL"):
            config.oui_url = oui_url
        if oui_path := os.getenv("OUI_PATH"):
            config.oui_path = Path(oui_path)

        for name in ("freebox", "unifi"):
            url = os.getenv(f"{name.upper()}_INVENTORY_URL")
            if url:
                config.sources[name] = SourceConfig(enabled=True, url=url)

        config.api_host = os.getenv("API_HOST", "127.0.0.1")
        config.api_port = int(os.getenv("API_PORT", "8090"))

        if db_path := os.getenv("DB_PATH"):
            config.db_path = Path(db_path)

        config.log_level = os.getenv("LOG_LEVEL", "INFO")

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "MonitorConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        if "prober" in data:
            p = data["prober"]
            config.max_concurrent_pings = p.get("max_concurrent", 20)
            config.ping_timeout_seconds = p.get("timeout", 2)
            config.batch_delay_ms = p.get("batch_delay_ms", 100)
            config.max_scan_hosts = p.get("max_hosts", 1000)

        if "port_scan" in data:
            p = data["port_scan"]
            config.port_scan_range = p.get("ports", "1-10000")
            config.port_scan_timeout_seconds = p.get("timeout", 120)
            config.max_port_scan_hosts = p.get("max_hosts", 200)

        if "latency" in data:
            lat = data["latency"]
            config.latency_interval_seconds = lat.get("interval", 15)
            config.latency_retention_hours = lat.get("retention_hours", 24)

        if "history" in data:
            config.history_retention_days = data["history"].get("retention_days", 30)

        if "vendors" in data:
            v = data["vendors"]
            config.oui_url = v.get("url", config.oui_url)
            if "path" in v:
                config.oui_path = Path(v["path"])
            config.vendor_min_count = v.get("min_count", 1000)

        for name, s in (data.get("sources") or {}).items():
            config.sources[name] = SourceConfig(
                enabled=s.get("enabled", False),
                url=s.get("url"),
                refresh_interval_seconds=s.get("refresh_interval", 300),
            )

        if "api" in data:
            a = data["api"]
            config.api_host = a.get("host", "127.0.0.1")
            config.api_port = a.get("port", 8090)

        if "paths" in data and "db" in data["paths"]:
            config.db_path = Path(data["paths"]["db"])

        config.log_level = data.get("log_level", "INFO")

        return config

    def validate(self) -> list[str]:
        """Validate configuration, returning list of errors."""
        errors = []

        if self.max_concurrent_pings < 1:
            errors.append(f"Invalid max_concurrent_pings: {self.max_concurrent_pings}")

        if self.ping_timeout_seconds < 1:
            errors.append(f"Invalid ping timeout: {self.ping_timeout_seconds}")

        if self.max_scan_hosts < 1:
            errors.append(f"Invalid max_scan_hosts: {self.max_scan_hosts}")

        if self.latency_interval_seconds < 1:
            errors.append(f"Invalid latency interval: {self.latency_interval_seconds}")

        if not 0 < self.api_port < 65536:
            errors.append(f"Invalid API port: {self.api_port}")

        for name, source in self.sources.items():
            if name not in ("freebox", "unifi"):
                errors.append(f"Unknown collaborator source: {name}")
            elif source.enabled and not source.url:
                errors.append(f"Source {name} enabled but no inventory URL configured")

        return errors


# Example network_monitor.yaml:
"""
prober:
  max_concurrent: 20
  timeout: 2
  batch_delay_ms: 100

port_scan:
  ports: "1-10000"
  timeout: 120
  max_hosts: 200

latency:
  interval: 15
  retention_hours: 24

sources:
  freebox:
    enabled: true
    url: "http://127.0.0.1:3000/inventory/freebox.json"
  unifi:
    enabled: false

api:
  host: "127.0.0.1"
  port: 8090

paths:
  db: "/var/lib/network-monitor/hosts.db"

log_level: "INFO"
"""
