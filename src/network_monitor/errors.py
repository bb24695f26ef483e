"""
Exceptions raised by the network monitor.

ValidationError, ConflictError and NotFoundError surface to API callers.
ProbeError and ExternalToolError are recovered per host and never abort
a scan.
"""

from __future__ import annotations

from typing import Optional


class NetworkMonitorError(Exception):
    """Base exception for network monitor errors."""
    pass


class ValidationError(NetworkMonitorError):
    """Malformed range, address or configuration value."""

    def __init__(self, message: str, token: Optional[str] = None):
        self.token = token
        super().__init__(message)


class ConflictError(NetworkMonitorError):
    """A scan job is already running."""
    pass


class NotFoundError(NetworkMonitorError):
    """Operation on an unknown IP."""
    pass


class ProbeError(NetworkMonitorError):
    """A single host could not be probed (timeout, unreachable)."""

    def __init__(self, ip: str, reason: str):
        self.ip = ip
        self.reason = reason
        super().__init__(f"Probe of {ip} failed: {reason}")


class ExternalToolError(NetworkMonitorError):
    """An external tool (nmap, ping) failed for a host."""

    def __init__(self, tool: str, ip: str, reason: str):
        self.tool = tool
        self.ip = ip
        self.reason = reason
        super().__init__(f"{tool} failed for {ip}: {reason}")
