"""
Hostname and vendor sources for the priority merger.

- ScannerSource: results of the monitor's own probing
- InventorySource: Freebox / UniFi device inventories
"""

from .base import HostSource
from .inventory import InventorySource
from .scanner import ScannerSource

__all__ = [
    "HostSource",
    "InventorySource",
    "ScannerSource",
]
