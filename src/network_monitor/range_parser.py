"""
Scan range parsing.

Accepts three forms, all restricted to private IPv4 space:
- CIDR:   192.168.1.0/24   (network and broadcast excluded)
- Range:  192.168.1.10-50  (last octet only, capped at .254)
- Single: 192.168.1.7

Invalid input raises ValidationError before anything is expanded.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Iterator

from .errors import ValidationError

DEFAULT_MAX_HOSTS = 1000
MIN_PREFIX = 16

PRIVATE_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)

_IPV4_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
_LAST_OCTET_RANGE_RE = re.compile(r"^(\d{1,3}\.\d{1,3}\.\d{1,3})\.(\d{1,3})-(\d{1,3})$")


def is_valid_ipv4(ip: str) -> bool:
    """Strict dotted-quad check: four decimal octets 0-255, no leading zeros."""
    if not isinstance(ip, str):
        return False
    match = _IPV4_RE.match(ip.strip())
    if not match:
        return False
    for octet in match.groups():
        if int(octet) > 255 or (len(octet) > 1 and octet.startswith("0")):
            return False
    return True


def is_private_ipv4(ip: str) -> bool:
    """Check that an address belongs to RFC 1918 space."""
    if not is_valid_ipv4(ip):
        return False
    address = ipaddress.IPv4Address(ip.strip())
    return any(address in network for network in PRIVATE_NETWORKS)


def sort_key(ip: str) -> int:
    """Numeric sort key for an IPv4 address; invalid addresses sort first."""
    try:
        return int(ipaddress.IPv4Address(ip))
    except (ipaddress.AddressValueError, ValueError):
        return 0


@dataclass(frozen=True)
class ScanRange:
    """A parsed, bounded, contiguous run of target addresses."""
    expression: str
    first: ipaddress.IPv4Address
    last: ipaddress.IPv4Address

    def hosts(self) -> list[str]:
        """Ordered target addresses."""
        return list(self)

    def __iter__(self) -> Iterator[str]:
        for value in range(int(self.first), int(self.last) + 1):
            yield str(ipaddress.IPv4Address(value))

    def __len__(self) -> int:
        return int(self.last) - int(self.first) + 1

    def __contains__(self, ip: object) -> bool:
        if not isinstance(ip, str) or not is_valid_ipv4(ip):
            return False
        return self.first <= ipaddress.IPv4Address(ip) <= self.last


def _require_private(ip: str, token: str) -> None:
    if not is_valid_ipv4(ip):
        raise ValidationError(f"Invalid IPv4 address: {token}", token=token)
    if not is_private_ipv4(ip):
        raise ValidationError(
            f"Only private networks can be scanned (10/8, 172.16/12, 192.168/16): {token}",
            token=token,
        )


def _parse_cidr(expr: str, max_hosts: int) -> ScanRange:
    base, _, prefix_str = expr.partition("/")
    _require_private(base, base)

    if not prefix_str.isdigit():
        raise ValidationError(f"Invalid prefix length: /{prefix_str}", token=f"/{prefix_str}")
    prefix = int(prefix_str)
    if prefix > 32:
        raise ValidationError(f"Invalid prefix length: /{prefix}", token=f"/{prefix}")
    if prefix < MIN_PREFIX:
        raise ValidationError(
            f"Network range too large: /{prefix} (minimum prefix is /{MIN_PREFIX})",
            token=f"/{prefix}",
        )

    network = ipaddress.IPv4Network(f"{base}/{prefix}", strict=False)
    if prefix >= 31:
        first, last = network.network_address, network.broadcast_address
    else:
        first, last = network.network_address + 1, network.broadcast_address - 1

    count = int(last) - int(first) + 1
    if count > max_hosts:
        raise ValidationError(
            f"Network range too large: /{prefix} has {count} hosts (maximum {max_hosts})",
            token=f"/{prefix}",
        )

    return ScanRange(expression=expr, first=first, last=last)


def _parse_last_octet_range(match: re.Match, expr: str) -> ScanRange:
    prefix, start_str, end_str = match.groups()
    start, end = int(start_str), int(end_str)

    _require_private(f"{prefix}.{start}", expr)
    if end < 1 or end > 255:
        raise ValidationError(f"Range end must be between 1 and 255: {end_str}", token=end_str)
    if end < start:
        raise ValidationError(
            f"Range end {end} is lower than range start {start}", token=expr
        )

    end = min(end, 254)
    if start < 1 or start > end:
        raise ValidationError(f"Range start out of bounds: {start_str}", token=start_str)

    return ScanRange(
        expression=expr,
        first=ipaddress.IPv4Address(f"{prefix}.{start}"),
        last=ipaddress.IPv4Address(f"{prefix}.{end}"),
    )


def parse_range(expr: str, max_hosts: int = DEFAULT_MAX_HOSTS) -> ScanRange:
    """
    Parse a scan range expression.

    Args:
        expr: CIDR, last-octet range or single address
        max_hosts: Largest number of addresses a range may expand to

    Returns:
        ScanRange

    Raises:
        ValidationError: naming the offending token
    """
    if not isinstance(expr, str) or not expr.strip():
        raise ValidationError("Scan range must be a non-empty string", token=str(expr))

    expr = expr.strip()

    if "/" in expr:
        return _parse_cidr(expr, max_hosts)

    match = _LAST_OCTET_RANGE_RE.match(expr)
    if match:
        return _parse_last_octet_range(match, expr)

    if "-" in expr:
        raise ValidationError(
            f"Invalid range format (expected a.b.c.start-end): {expr}", token=expr
        )

    _require_private(expr, expr)
    address = ipaddress.IPv4Address(expr)
    return ScanRange(expression=expr, first=address, last=address)


def ip_in_range(ip: str, expr: str) -> bool:
    """Check membership of an address in a range expression; False if either is invalid."""
    try:
        return ip in parse_range(expr, max_hosts=2 ** 16)
    except ValidationError:
        return False
