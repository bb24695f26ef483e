"""
Probe results of the current scan, exposed as the "scanner" source.
"""

from __future__ import annotations

from typing import Optional

from .._types import ProbeResult, SourceId
from .base import HostSource


class ScannerSource(HostSource):
    """Per-run cache of what the prober found for each IP."""

    def __init__(self):
        self._results: dict[str, ProbeResult] = {}

    @property
    def name(self) -> str:
        return SourceId.SCANNER.value

    def record(self, result: ProbeResult) -> None:
        self._results[result.ip] = result

    def clear(self) -> None:
        self._results.clear()

    def lookup_hostname(self, ip: str) -> Optional[str]:
        result = self._results.get(ip)
        return result.hostname if result else None

    def lookup_vendor(self, ip: str) -> Optional[str]:
        result = self._results.get(ip)
        return result.vendor if result else None
