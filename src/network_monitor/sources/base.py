"""
Base class for hostname/vendor sources.

The priority merger asks each source for a value per IP. Sources form a
closed set: the monitor's own probe results (scanner) and the cached
device inventories of the Freebox router and the UniFi controller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class HostSource(ABC):
    """A provider of hostname and vendor values keyed by IP."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Source id (freebox, unifi or scanner)."""
        pass

    @property
    def enabled(self) -> bool:
        """Disabled sources keep their place in priority lists but yield nothing."""
        return True

    @abstractmethod
    def lookup_hostname(self, ip: str) -> Optional[str]:
        """Hostname known to this source, or None."""
        pass

    @abstractmethod
    def lookup_vendor(self, ip: str) -> Optional[str]:
        """Vendor known to this source, or None."""
        pass
