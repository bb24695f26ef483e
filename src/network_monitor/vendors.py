"""
MAC vendor lookup backed by the IEEE OUI registry.

The full registry (oui.txt, the file Wireshark ships as its manuf
source) is loaded into the oui_vendors table. A small built-in map
covers common devices until the first update has run.

oui.txt entries look like:

    00-1A-11   (hex)\t\tGoogle, Inc.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Optional

import aiohttp

from .errors import NetworkMonitorError, ValidationError
from .host_db import HostDatabase
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


IEEE_OUI_URL = "https://standards-oui.ieee.org/oui/oui.txt"

_OUI_LINE_RE = re.compile(
    r"^\s*([0-9A-Fa-f]{2})-([0-9A-Fa-f]{2})-([0-9A-Fa-f]{2})\s+\(hex\)\s+(.+?)\s*$"
)

# Common vendors, used before the registry has been loaded
BUILTIN_VENDORS: dict[str, str] = {
    "b8:27:eb": "Raspberry Pi Foundation",
    "dc:a6:32": "Raspberry Pi Trading Ltd",
    "e4:5f:01": "Raspberry Pi Trading Ltd",
    "00:1a:11": "Google, Inc.",
    "f4:f5:d8": "Google, Inc.",
    "3c:22:fb": "Apple, Inc.",
    "a4:83:e7": "Apple, Inc.",
    "f0:18:98": "Apple, Inc.",
    "00:50:56": "VMware, Inc.",
    "00:0c:29": "VMware, Inc.",
    "08:00:27": "PCS Systemtechnik GmbH",
    "52:54:00": "QEMU virtual NIC",
    "00:24:d4": "FREEBOX SAS",
    "14:0c:76": "FREEBOX SAS",
    "f4:ca:e5": "FREEBOX SAS",
    "24:5a:4c": "Ubiquiti Inc",
    "78:8a:20": "Ubiquiti Inc",
    "fc:ec:da": "Ubiquiti Inc",
    "00:17:88": "Philips Lighting BV",
    "18:b4:30": "Nest Labs Inc.",
    "44:65:0d": "Amazon Technologies Inc.",
    "b0:be:76": "TP-LINK TECHNOLOGIES CO.,LTD.",
    "00:1b:63": "Apple, Inc.",
    "a0:20:a6": "Espressif Inc.",
    "24:0a:c4": "Espressif Inc.",
    "00:11:32": "Synology Incorporated",
}


def normalize_oui(mac: Optional[str]) -> Optional[str]:
    """Return the xx:xx:xx OUI prefix of a MAC address, or None."""
    if not mac:
        return None
    digits = re.sub(r"[^0-9a-fA-F]", "", mac)
    if len(digits) < 6:
        return None
    digits = digits[:6].lower()
    return f"{digits[0:2]}:{digits[2:4]}:{digits[4:6]}"


def parse_oui_text(text: str) -> dict[str, str]:
    """Parse oui.txt content into {xx:xx:xx: vendor}."""
    vendors: dict[str, str] = {}
    for line in text.splitlines():
        match = _OUI_LINE_RE.match(line)
        if match:
            a, b, c, vendor = match.groups()
            vendors[f"{a}:{b}:{c}".lower()] = vendor
    return vendors


class VendorDatabase:
    """OUI vendor table with on-demand refresh from the IEEE registry."""

    def __init__(
        self,
        db: HostDatabase,
        settings: RuntimeSettings,
        oui_path: Path | str = "/var/lib/network-monitor/oui.txt",
        url: str = IEEE_OUI_URL,
        min_count: int = 1000,
        timeout_seconds: int = 120,
    ):
        self.db = db
        self.settings = settings
        self.oui_path = Path(oui_path)
        self.url = url
        self.min_count = min_count
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    def lookup(self, mac: Optional[str]) -> Optional[str]:
        """Vendor for a MAC address: registry table first, then the built-in map."""
        oui = normalize_oui(mac)
        if not oui:
            return None
        return self.db.lookup_vendor(oui) or BUILTIN_VENDORS.get(oui)

    def _read_local(self) -> Optional[dict[str, str]]:
        """Parse the local oui.txt if present and large enough."""
        if not self.oui_path.exists():
            return None
        try:
            vendors = parse_oui_text(self.oui_path.read_text(encoding="utf-8", errors="replace"))
        except OSError as e:
            logger.warning(f"Could not read {self.oui_path}: {e}")
            return None
        if len(vendors) < self.min_count:
            logger.warning(
                f"Local OUI file {self.oui_path} has only {len(vendors)} entries, ignoring"
            )
            return None
        return vendors

    async def _download(self) -> str:
        session = await self._get_session()
        logger.info(f"Downloading OUI registry from {self.url}")
        try:
            async with session.get(self.url) as resp:
                if resp.status != 200:
                    raise NetworkMonitorError(f"OUI download failed: HTTP {resp.status}")
                return await resp.text(errors="replace")
        except aiohttp.ClientError as e:
            raise NetworkMonitorError(f"OUI download failed: {e}") from e

    async def update(self, force_download: bool = False) -> dict[str, Any]:
        """
        Reload the vendor table.

        Uses the local oui.txt when it is valid, otherwise downloads the
        registry, validates it and saves it locally.

        Returns:
            {"source": "local" | "downloaded", "vendor_count": int}

        Raises:
            ValidationError: If the downloaded file has too few entries
            NetworkMonitorError: If the download fails
        """
        vendors = None if force_download else self._read_local()
        source = "local"

        if vendors is None:
            text = await self._download()
            vendors = parse_oui_text(text)
            if len(vendors) < self.min_count:
                raise ValidationError(
                    f"Downloaded OUI file has {len(vendors)} entries "
                    f"(expected at least {self.min_count})"
                )
            self.oui_path.parent.mkdir(parents=True, exist_ok=True)
            self.oui_path.write_text(text, encoding="utf-8")
            source = "downloaded"

        count = self.db.replace_vendors(vendors)
        self.settings.record_oui_update()
        logger.info(f"Vendor table loaded from {source} file: {count} vendors")
        return {"source": source, "vendor_count": count}

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_vendors": self.db.count_vendors(),
            "last_update": self.settings.get_oui_last_update(),
        }
