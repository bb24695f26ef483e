"""
Collaborator device inventories (Freebox router, UniFi controller).

Each inventory is a cached map of IP -> {hostname, vendor}. It is fed
either directly through update_inventory() or by fetching a JSON
document from a configured URL. Accepted documents:

    [{"ip": "192.168.1.20", "hostname": "nas", "vendor": "Synology"}, ...]
    {"devices": [...]}

"name" is accepted as an alias for "hostname" and "ip_address" for "ip".
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

import aiohttp

from .._types import now_utc
from ..errors import NetworkMonitorError
from .base import HostSource

logger = logging.getLogger(__name__)


class InventorySource(HostSource):
    """Cached device inventory of an external collaborator."""

    def __init__(
        self,
        name: str,
        url: Optional[str] = None,
        enabled: bool = False,
        refresh_interval_seconds: int = 300,
        timeout_seconds: int = 10,
    ):
        self._name = name
        self.url = url
        self._enabled = enabled
        self.refresh_interval_seconds = refresh_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._devices: dict[str, dict[str, Optional[str]]] = {}
        self.last_refresh: Optional[datetime] = None
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    def __len__(self) -> int:
        return len(self._devices)

    def update_inventory(self, devices: Iterable[dict[str, Any]]) -> int:
        """Replace the cached inventory. Returns the number of devices kept."""
        inventory = {}
        for device in devices:
            ip = device.get("ip") or device.get("ip_address")
            if not ip:
                continue
            inventory[ip] = {
                "hostname": device.get("hostname") or device.get("name") or None,
                "vendor": device.get("vendor") or None,
            }
        self._devices = inventory
        self.last_refresh = now_utc()
        logger.debug(f"{self._name} inventory updated: {len(inventory)} devices")
        return len(inventory)

    def lookup_hostname(self, ip: str) -> Optional[str]:
        device = self._devices.get(ip)
        return device["hostname"] if device else None

    def lookup_vendor(self, ip: str) -> Optional[str]:
        device = self._devices.get(ip)
        return device["vendor"] if device else None

    # -------------------------------------------------------------------------
    # Remote refresh
    # -------------------------------------------------------------------------

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

    def is_stale(self) -> bool:
        if self.last_refresh is None:
            return True
        age = (now_utc() - self.last_refresh).total_seconds()
        return age >= self.refresh_interval_seconds

    async def refresh(self) -> int:
        """
        Fetch the inventory from the configured URL.

        Raises:
            NetworkMonitorError: On HTTP or decoding failure
        """
        if not self.url:
            raise NetworkMonitorError(f"No inventory URL configured for {self._name}")

        session = await self._get_session()
        try:
            async with session.get(self.url) as resp:
                if resp.status != 200:
                    raise NetworkMonitorError(
                        f"{self._name} inventory fetch failed: HTTP {resp.status}"
                    )
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            raise NetworkMonitorError(f"{self._name} inventory fetch failed: {e}") from e

        if isinstance(data, dict):
            data = data.get("devices", [])
        if not isinstance(data, list):
            raise NetworkMonitorError(f"{self._name} inventory is not a device list")

        return self.update_inventory(d for d in data if isinstance(d, dict))

    async def refresh_if_stale(self) -> None:
        """Refresh when enabled, configured and older than the refresh interval."""
        if not (self._enabled and self.url and self.is_stale()):
            return
        try:
            count = await self.refresh()
            logger.info(f"{self._name} inventory refreshed: {count} devices")
        except NetworkMonitorError as e:
            logger.error(f"{e}")
