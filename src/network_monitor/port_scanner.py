"""
Background TCP port scanner.

Runs nmap connect scans (-sT -Pn) over live hosts one at a time, in a
background task that can be stopped between hosts. python-nmap is
synchronous, so each scan runs in a single worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Iterable, Optional

import nmap

from ._types import OpenPort, PortScanState, now_utc
from .errors import ExternalToolError
from .host_db import HostDatabase
from .range_parser import sort_key
from .utils import command_available

logger = logging.getLogger(__name__)


class PortScanner:
    """
    Sequential, cancellable port scanning of a list of hosts.

    Only one run is active at a time; start() while active is a no-op.
    """

    def __init__(
        self,
        db: HostDatabase,
        port_range: str = "1-10000",
        host_timeout_seconds: int = 120,
        max_hosts: int = 200,
    ):
        """
        Initialize port scanner.

        Args:
            db: Store receiving open ports per host
            port_range: nmap -p argument
            host_timeout_seconds: Budget for a single host
            max_hosts: Hosts scanned per run at most
        """
        self.db = db
        self.port_range = port_range
        self.host_timeout_seconds = host_timeout_seconds
        self.max_hosts = max_hosts
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._state = PortScanState()
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> PortScanState:
        """Snapshot of the current progress."""
        return replace(self._state)

    @property
    def active(self) -> bool:
        return self._state.active

    async def is_available(self) -> bool:
        """Check if nmap is available."""
        return await command_available("nmap")

    def start(self, ips: Iterable[str]) -> bool:
        """
        Launch a background run over ips.

        Returns: False if a run is already active
        """
        if self._state.active:
            logger.debug("Port scan already running, ignoring start")
            return False

        targets = sorted(set(ips), key=sort_key)
        if len(targets) > self.max_hosts:
            logger.warning(
                f"Port scan limited to {self.max_hosts} of {len(targets)} hosts"
            )
            targets = targets[:self.max_hosts]

        self._begin(targets)
        self._task = asyncio.create_task(self._run(targets))
        return True

    async def run(self, ips: Iterable[str]) -> bool:
        """Start a run and wait for it to finish."""
        if not self.start(ips):
            return False
        await self.wait()
        return True

    async def wait(self) -> None:
        if self._task:
            await self._task

    def stop(self) -> bool:
        """
        Request the active run to stop after the current host.

        Returns immediately. Returns False if nothing is running.
        """
        if not self._state.active:
            return False
        self._stop_requested = True
        logger.info("Port scan stop requested")
        return True

    def _begin(self, targets: list[str]) -> None:
        self._stop_requested = False
        self._state = PortScanState(active=True, current=0, total=len(targets))

    async def _run(self, targets: list[str]) -> None:
        loop = asyncio.get_running_loop()
        scanned = 0
        try:
            if not await self.is_available():
                logger.warning("nmap not available, skipping port scan")
                return

            logger.info(f"Port scan started for {len(targets)} hosts")

            for index, ip in enumerate(targets, start=1):
                if self._stop_requested:
                    logger.info(f"Port scan stopped after {scanned}/{len(targets)} hosts")
                    break

                self._state.current = index
                self._state.current_ip = ip

                try:
                    ports = await asyncio.wait_for(
                        loop.run_in_executor(self._executor, self._scan_host, ip),
                        timeout=self.host_timeout_seconds + 10,
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"Port scan of {ip} timed out")
                    continue
                except ExternalToolError as e:
                    logger.warning(f"{e}")
                    continue

                self.db.set_open_ports(ip, ports, scanned_at=now_utc())
                scanned += 1
                logger.debug(f"{ip}: {len(ports)} open ports")

            else:
                logger.info(f"Port scan completed: {scanned} hosts scanned")

        except Exception as e:
            logger.error(f"Port scan failed: {e}")

        finally:
            self._state.active = False
            self._state.current_ip = None

    def _scan_host(self, ip: str) -> list[OpenPort]:
        """
        Scan one host (runs in thread pool).

        This is a blocking operation that should not be called from async code.
        """
        args = f"-sT -Pn -p {self.port_range} --host-timeout {self.host_timeout_seconds}s"
        try:
            scanner = nmap.PortScanner()
            logger.debug(f"Running nmap: {ip} {args}")
            scanner.scan(hosts=ip, arguments=args)
        except nmap.PortScannerError as e:
            raise ExternalToolError("nmap", ip, str(e)) from e

        if ip not in scanner.all_hosts():
            return []

        host_info = scanner[ip]
        ports = []
        for proto in ("tcp", "udp"):
            if proto not in host_info.all_protocols():
                continue
            for port, port_info in host_info[proto].items():
                if port_info.get("state") == "open":
                    ports.append(OpenPort(port=int(port), protocol=proto))

        return sorted(ports, key=lambda p: (p.port, p.protocol))
