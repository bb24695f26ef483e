"""
Host prober.

Liveness is checked with a single ICMP echo (ping -c 1). In full mode,
online hosts are also resolved to a MAC address (neighbour table), a
hostname (reverse DNS, getent, NetBIOS) and a vendor (OUI lookup).

Targets are probed in ascending order, in batches bounded by a
semaphore. Per-host failures never abort the run.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import socket
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Union

from ._types import ProbeMode, ProbeResult
from .errors import ProbeError, ValidationError
from .range_parser import is_valid_ipv4, sort_key
from .utils import run_command
from .vendors import VendorDatabase

logger = logging.getLogger(__name__)


MAC_RE = re.compile(r"([0-9a-f]{2}[:-]){5}([0-9a-f]{2})", re.IGNORECASE)
NULL_MAC = "00:00:00:00:00:00"

# "time<1ms" (Windows style) and "time=12.3 ms"
_LATENCY_INTEGER_RE = re.compile(r"time[<=](\d+)ms")
_LATENCY_DECIMAL_RE = re.compile(r"time=([\d.]+)\s*ms")

_NETBIOS_NAME_RE = re.compile(r"^\s*([A-Za-z0-9-]+)\s+<00>", re.MULTILINE)

PROC_NET_ARP = Path("/proc/net/arp")

ResultCallback = Callable[[ProbeResult], Union[None, Awaitable[None]]]


def parse_ping_latency(output: str) -> Optional[float]:
    """Extract round-trip time in ms from ping output."""
    match = _LATENCY_INTEGER_RE.search(output)
    if match:
        return float(match.group(1))
    match = _LATENCY_DECIMAL_RE.search(output)
    if match:
        try:
            return float(match.group(1))
        except ValueError:
            return None
    return None


def extract_mac(text: str) -> Optional[str]:
    """First MAC address in text, normalized to lowercase colon form."""
    match = MAC_RE.search(text)
    if not match:
        return None
    mac = match.group(0).lower().replace("-", ":")
    if mac == NULL_MAC:
        return None
    return mac


def parse_proc_net_arp(content: str, ip: str) -> Optional[str]:
    """
    Find the MAC of ip in /proc/net/arp.

    Format:
        IP address       HW type     Flags       HW address            Mask     Device
        192.168.1.1      0x1         0x2         aa:bb:cc:dd:ee:ff     *        eth0
    """
    for line in content.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 4 and parts[0] == ip:
            return extract_mac(parts[3])
    return None


class HostProber:
    """Probe hosts for liveness and attributes with bounded concurrency."""

    def __init__(
        self,
        vendors: Optional[VendorDatabase] = None,
        max_concurrent: int = 20,
        timeout_seconds: int = 2,
        batch_delay_ms: int = 100,
    ):
        self.vendors = vendors
        self.max_concurrent = max_concurrent
        self.timeout_seconds = timeout_seconds
        self.batch_delay_ms = batch_delay_ms

    # -------------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------------

    async def _ping(self, ip: str) -> Optional[float]:
        """
        Send one echo request.

        Returns latency in ms, or None if the host did not answer.

        Raises:
            ProbeError: If ping could not be run or did not return in time
        """
        cmd = ["ping", "-c", "1", "-W", str(self.timeout_seconds), ip]
        try:
            result = await run_command(cmd, timeout=self.timeout_seconds + 0.5)
        except asyncio.TimeoutError:
            raise ProbeError(ip, "ping timed out")
        except (FileNotFoundError, PermissionError) as e:
            raise ProbeError(ip, f"cannot run ping: {e}")

        if "Operation not permitted" in result.stderr:
            raise ProbeError(ip, "ping not permitted (NET_RAW capability required)")

        return parse_ping_latency(result.stdout)

    async def measure_latency(self, ip: str) -> Optional[float]:
        """Latency in ms, or None on timeout or failure."""
        try:
            return await self._ping(ip)
        except ProbeError as e:
            logger.debug(str(e))
            return None

    async def ping(self, ip: str) -> Optional[int]:
        """Rounded latency in ms, or None when the host is offline."""
        latency = await self.measure_latency(ip)
        return round(latency) if latency is not None else None

    # -------------------------------------------------------------------------
    # Attributes
    # -------------------------------------------------------------------------

    async def resolve_mac(self, ip: str) -> Optional[str]:
        """MAC from ip neigh, then /proc/net/arp, then arp -n."""
        try:
            result = await run_command(["ip", "neigh", "show", ip], timeout=3)
            mac = extract_mac(result.stdout)
            if mac:
                logger.debug(f"Found MAC {mac} for {ip} using ip neigh")
                return mac
        except (FileNotFoundError, asyncio.TimeoutError) as e:
            logger.debug(f"ip neigh failed for {ip}: {e!r}")

        try:
            if PROC_NET_ARP.exists():
                mac = parse_proc_net_arp(PROC_NET_ARP.read_text(), ip)
                if mac:
                    logger.debug(f"Found MAC {mac} for {ip} using /proc/net/arp")
                    return mac
        except OSError as e:
            logger.debug(f"/proc/net/arp failed for {ip}: {e}")

        try:
            result = await run_command(["arp", "-n", ip], timeout=2)
            mac = extract_mac(result.stdout)
            if mac:
                logger.debug(f"Found MAC {mac} for {ip} using arp")
                return mac
        except (FileNotFoundError, asyncio.TimeoutError) as e:
            logger.debug(f"arp failed for {ip}: {e!r}")

        return None

    async def _reverse_dns(self, ip: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        try:
            hostname, _, _ = await asyncio.wait_for(
                loop.run_in_executor(None, socket.gethostbyaddr, ip),
                timeout=self.timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError):
            return None
        hostname = hostname.strip()
        if not hostname or hostname.endswith("in-addr.arpa"):
            return None
        return hostname

    async def resolve_hostname(self, ip: str) -> tuple[Optional[str], Optional[str]]:
        """
        Hostname by reverse DNS, then getent hosts, then nmblookup.

        Returns: (hostname, method) or (None, None)
        """
        hostname = await self._reverse_dns(ip)
        if hostname:
            return hostname, "dns"

        try:
            result = await run_command(["getent", "hosts", ip], timeout=2)
            parts = result.stdout.split()
            if result.success and len(parts) >= 2 and not parts[1].endswith("in-addr.arpa"):
                return parts[1], "getent"
        except (FileNotFoundError, asyncio.TimeoutError) as e:
            logger.debug(f"getent hosts failed for {ip}: {e!r}")

        try:
            result = await run_command(["nmblookup", "-A", ip], timeout=3)
            for line in result.stdout.splitlines():
                if "<GROUP>" in line:
                    continue
                match = _NETBIOS_NAME_RE.match(line)
                if match:
                    return match.group(1), "netbios"
        except (FileNotFoundError, asyncio.TimeoutError) as e:
            logger.debug(f"nmblookup failed for {ip}: {e!r}")

        return None, None

    # -------------------------------------------------------------------------
    # Probing
    # -------------------------------------------------------------------------

    async def probe_host(self, ip: str, mode: ProbeMode = ProbeMode.FULL) -> ProbeResult:
        """
        Probe one host.

        Raises:
            ValidationError: If ip is not a valid IPv4 address
        """
        if not is_valid_ipv4(ip):
            raise ValidationError(f"Invalid IP address: {ip}", token=ip)

        result = ProbeResult(ip=ip)
        try:
            latency = await self._ping(ip)
        except ProbeError as e:
            logger.debug(str(e))
            result.error = e.reason
            return result

        if latency is None:
            return result

        result.online = True
        result.latency_ms = round(latency)

        if mode == ProbeMode.FULL:
            result.mac = await self.resolve_mac(ip)
            result.hostname, result.hostname_source = await self.resolve_hostname(ip)
            if result.mac and self.vendors:
                result.vendor = self.vendors.lookup(result.mac)

        logger.debug(
            f"Probed {ip}: online latency={result.latency_ms}ms "
            f"mac={result.mac} hostname={result.hostname}"
        )
        return result

    async def probe_all(
        self,
        targets: Iterable[str],
        mode: ProbeMode = ProbeMode.QUICK,
        cancel: Optional[asyncio.Event] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> list[ProbeResult]:
        """
        Probe targets in ascending order.

        Args:
            targets: IPv4 addresses (duplicates are probed once)
            mode: quick (liveness only) or full (plus attributes)
            cancel: Checked between batches; in-flight probes finish
            on_result: Called once per completed probe, sync or async

        Returns:
            Results of the probes that ran

        Raises:
            ValidationError: If any target is malformed (nothing is probed)
        """
        ordered = sorted(set(targets), key=sort_key)
        for ip in ordered:
            if not is_valid_ipv4(ip):
                raise ValidationError(f"Invalid IP address: {ip}", token=ip)

        semaphore = asyncio.Semaphore(self.max_concurrent)
        results: list[ProbeResult] = []

        async def bounded(ip: str) -> ProbeResult:
            async with semaphore:
                try:
                    result = await self.probe_host(ip, mode)
                except Exception as e:
                    logger.error(f"Unexpected error probing {ip}: {e}")
                    result = ProbeResult(ip=ip, error=str(e))
            if on_result is not None:
                outcome = on_result(result)
                if inspect.isawaitable(outcome):
                    await outcome
            return result

        batch_size = max(1, self.max_concurrent)
        for start in range(0, len(ordered), batch_size):
            if cancel is not None and cancel.is_set():
                logger.info(f"Probing cancelled after {len(results)}/{len(ordered)} hosts")
                break

            batch = ordered[start:start + batch_size]
            results.extend(await asyncio.gather(*(bounded(ip) for ip in batch)))

            if self.batch_delay_ms and start + batch_size < len(ordered):
                await asyncio.sleep(self.batch_delay_ms / 1000)

        return results
