"""
Host record database for the network monitor.

SQLite database at /var/lib/network-monitor/hosts.db storing:
- Known hosts keyed by IP, with merged hostname/vendor and open ports
- Per-scan history entries used for the stats chart
- Runtime settings (schedules, plugin priority, ban list) as JSON
- Latency monitoring flags
- The OUI vendor table

Uses WAL mode for crash safety and concurrent reads. Writes to a host
are serialized per IP, never globally.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from ._types import HostRecord, HostStatus, OpenPort, now_utc
from .errors import ValidationError
from .range_parser import is_valid_ipv4, sort_key

logger = logging.getLogger(__name__)


BLACKLIST_KEY = "network_scan_blacklist"

SORTABLE_COLUMNS = (
    "ip", "last_seen", "first_seen", "status",
    "ping_latency", "hostname", "mac", "vendor",
)

MAX_PAGE_SIZE = 1000
HISTORY_BUCKET_MINUTES = 15
MAX_HISTORY_BUCKETS = 48
MAX_HISTORY_HOURS = 168


# Database schema
SCHEMA = """
-- Known hosts
CREATE TABLE IF NOT EXISTS hosts (
    ip TEXT PRIMARY KEY,
    mac TEXT,
    hostname TEXT,
    vendor TEXT,
    hostname_source TEXT,
    vendor_source TEXT,
    status TEXT NOT NULL DEFAULT 'unknown',
    ping_latency INTEGER,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    scan_count INTEGER NOT NULL DEFAULT 1,
    open_ports TEXT,       -- JSON array of {port, protocol}
    last_port_scan TEXT,
    additional_info TEXT   -- JSON object
);

-- One row per host per scan, aggregated into chart buckets
CREATE TABLE IF NOT EXISTS host_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ip TEXT NOT NULL,
    status TEXT NOT NULL,
    ping_latency INTEGER,
    seen_at TEXT NOT NULL
);

-- Runtime settings (JSON values)
CREATE TABLE IF NOT EXISTS app_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Per-IP latency monitoring opt-in
CREATE TABLE IF NOT EXISTS latency_monitoring (
    ip TEXT PRIMARY KEY,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- MAC OUI -> vendor
CREATE TABLE IF NOT EXISTS oui_vendors (
    oui TEXT PRIMARY KEY,
    vendor TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_hosts_status ON hosts(status);
CREATE INDEX IF NOT EXISTS idx_hosts_last_seen ON hosts(last_seen);
CREATE INDEX IF NOT EXISTS idx_host_history_seen ON host_history(seen_at);
CREATE INDEX IF NOT EXISTS idx_host_history_ip ON host_history(ip);
"""


def _iso_format(dt: datetime) -> str:
    """Format datetime as a fixed-width UTC ISO string (sortable as text)."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


class KeyedLock:
    """Mutual exclusion per key; unrelated keys never contend."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class HostDatabase:
    """
    SQLite database for host records, history and runtime settings.

    Thread-safe with WAL mode enabled for concurrent reads.
    """

    def __init__(self, db_path: Path | str = "/var/lib/network-monitor/hosts.db"):
        self.db_path = Path(db_path)
        self._ip_locks = KeyedLock()
        self._ensure_directory()
        self._init_db()

    def _ensure_directory(self) -> None:
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            # Enable WAL mode for crash safety
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a JSON setting value."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM app_config WHERE key = ?", (key,)
            ).fetchone()
        if not row:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning(f"Corrupt setting {key}, using default")
            return default

    def set_setting(self, key: str, value: Any) -> None:
        """Store a JSON setting value."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO app_config (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """, (key, json.dumps(value), _iso_format(now_utc())))
            conn.commit()

    # -------------------------------------------------------------------------
    # Ban list
    # -------------------------------------------------------------------------

    def get_banned_ips(self) -> list[str]:
        """Get banned IPs in numeric order."""
        banned = self.get_setting(BLACKLIST_KEY, [])
        return sorted(set(banned), key=sort_key)

    def is_banned(self, ip: str) -> bool:
        return ip in self.get_banned_ips()

    def ban_ip(self, ip: str) -> bool:
        """
        Ban an IP from future scans and merge updates.

        The stored record, if any, is kept.

        Returns: True if newly banned
        """
        if not is_valid_ipv4(ip):
            raise ValidationError(f"Invalid IP address: {ip}", token=ip)
        banned = self.get_banned_ips()
        if ip in banned:
            return False
        banned.append(ip)
        self.set_setting(BLACKLIST_KEY, sorted(banned, key=sort_key))
        logger.info(f"Banned {ip}")
        return True

    def unban_ip(self, ip: str) -> bool:
        """Remove an IP from the ban list. Returns True if it was banned."""
        if not is_valid_ipv4(ip):
            raise ValidationError(f"Invalid IP address: {ip}", token=ip)
        banned = self.get_banned_ips()
        if ip not in banned:
            return False
        banned.remove(ip)
        self.set_setting(BLACKLIST_KEY, banned)
        logger.info(f"Unbanned {ip}")
        return True

    # -------------------------------------------------------------------------
    # Host CRUD
    # -------------------------------------------------------------------------

    def upsert_host(
        self,
        ip: str,
        status: HostStatus,
        ping_latency_ms: Optional[int] = None,
        mac: Optional[str] = None,
        hostname: Optional[str] = None,
        hostname_source: Optional[str] = None,
        vendor: Optional[str] = None,
        vendor_source: Optional[str] = None,
    ) -> tuple[Optional[HostRecord], bool]:
        """
        Insert or update a host.

        Attribute arguments left as None keep the stored value. last_seen
        moves forward only when the host is online.

        Returns: (record, is_new); record is None for banned IPs
        """
        if self.is_banned(ip):
            logger.debug(f"Skipping upsert of banned IP {ip}")
            return None, False

        now = _iso_format(now_utc())

        with self._ip_locks.hold(ip):
            with self._get_connection() as conn:
                existing = conn.execute(
                    "SELECT ip FROM hosts WHERE ip = ?", (ip,)
                ).fetchone()

                if existing:
                    conn.execute("""
                        UPDATE hosts SET
                            mac = COALESCE(?, mac),
                            hostname = COALESCE(?, hostname),
                            hostname_source = COALESCE(?, hostname_source),
                            vendor = COALESCE(?, vendor),
                            vendor_source = COALESCE(?, vendor_source),
                            status = ?,
                            ping_latency = ?,
                            last_seen = CASE WHEN ? = 'online' THEN ? ELSE last_seen END,
                            scan_count = scan_count + 1
                        WHERE ip = ?
                    """, (
                        mac,
                        hostname,
                        hostname_source,
                        vendor,
                        vendor_source,
                        status.value,
                        ping_latency_ms,
                        status.value,
                        now,
                        ip,
                    ))
                    is_new = False
                else:
                    conn.execute("""
                        INSERT INTO hosts (
                            ip, mac, hostname, hostname_source, vendor, vendor_source,
                            status, ping_latency, first_seen, last_seen, scan_count
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                    """, (
                        ip,
                        mac,
                        hostname,
                        hostname_source,
                        vendor,
                        vendor_source,
                        status.value,
                        ping_latency_ms,
                        now,
                        now,
                    ))
                    is_new = True
                conn.commit()

                row = conn.execute("SELECT * FROM hosts WHERE ip = ?", (ip,)).fetchone()
                return self._row_to_host(row), is_new

    def mark_offline(self, ip: str) -> Optional[HostRecord]:
        """Set a stored host offline without counting a detection."""
        with self._ip_locks.hold(ip):
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "UPDATE hosts SET status = ?, ping_latency = NULL WHERE ip = ?",
                    (HostStatus.OFFLINE.value, ip),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
                row = conn.execute("SELECT * FROM hosts WHERE ip = ?", (ip,)).fetchone()
                return self._row_to_host(row)

    def get_host(self, ip: str) -> Optional[HostRecord]:
        """Get host by IP address."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM hosts WHERE ip = ?", (ip,)
            ).fetchone()
            if row:
                return self._row_to_host(row)
            return None

    def get_known_ips(self, include_banned: bool = False) -> list[str]:
        """Get stored IPs in numeric order."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT ip FROM hosts").fetchall()
        ips = [row["ip"] for row in rows]
        if not include_banned:
            banned = set(self.get_banned_ips())
            ips = [ip for ip in ips if ip not in banned]
        return sorted(ips, key=sort_key)

    def find_hosts(
        self,
        status: Optional[HostStatus] = None,
        ip_prefix: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "last_seen",
        sort_order: str = "desc",
        limit: int = 100,
        offset: int = 0,
        include_banned: bool = False,
    ) -> tuple[list[HostRecord], int]:
        """
        Get hosts with optional filters.

        Sorting happens after filtering and before pagination: ip sorts
        numerically and hostname/mac/vendor put empty values last.

        Returns: (page of hosts, total matching)
        """
        if sort_by not in SORTABLE_COLUMNS:
            raise ValidationError(
                f"sort_by must be one of: {', '.join(SORTABLE_COLUMNS)}", token=sort_by
            )
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be asc or desc", token=sort_order)

        query = "SELECT * FROM hosts WHERE 1=1"
        params: list = []

        if status:
            query += " AND status = ?"
            params.append(status.value)
        if ip_prefix:
            query += " AND ip LIKE ?"
            params.append(f"{ip_prefix}%")
        if search:
            pattern = f"%{search}%"
            query += """ AND (
                ip LIKE ? OR COALESCE(mac, '') LIKE ? OR COALESCE(hostname, '') LIKE ?
                OR COALESCE(vendor, '') LIKE ?
                OR EXISTS (
                    SELECT 1 FROM json_each(COALESCE(open_ports, '[]'))
                    WHERE CAST(json_extract(value, '$.port') AS TEXT) LIKE ?
                )
            )"""
            params.extend([pattern] * 5)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        hosts = [self._row_to_host(row) for row in rows]
        if not include_banned:
            banned = set(self.get_banned_ips())
            hosts = [h for h in hosts if h.ip not in banned]

        hosts = self._sort_hosts(hosts, sort_by, sort_order == "desc")

        limit = max(0, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        return hosts[offset:offset + limit], len(hosts)

    def count_hosts(
        self,
        status: Optional[HostStatus] = None,
        ip_prefix: Optional[str] = None,
        search: Optional[str] = None,
    ) -> int:
        """Count hosts matching the same filters as find_hosts."""
        _, total = self.find_hosts(
            status=status, ip_prefix=ip_prefix, search=search, limit=0,
        )
        return total

    @staticmethod
    def _sort_hosts(hosts: list[HostRecord], sort_by: str, descending: bool) -> list[HostRecord]:
        if sort_by == "ip":
            return sorted(hosts, key=lambda h: sort_key(h.ip), reverse=descending)

        if sort_by in ("hostname", "mac", "vendor"):
            def text(h: HostRecord) -> str:
                value = (getattr(h, sort_by) or "").strip()
                return "" if value == "--" else value.lower()
            filled = [h for h in hosts if text(h)]
            empty = [h for h in hosts if not text(h)]
            return sorted(filled, key=text, reverse=descending) + empty

        if sort_by == "ping_latency":
            measured = [h for h in hosts if h.ping_latency_ms is not None]
            missing = [h for h in hosts if h.ping_latency_ms is None]
            return sorted(measured, key=lambda h: h.ping_latency_ms, reverse=descending) + missing

        if sort_by == "status":
            return sorted(hosts, key=lambda h: h.status.value, reverse=descending)

        return sorted(hosts, key=lambda h: getattr(h, sort_by), reverse=descending)

    def update_host(self, ip: str, **fields: Any) -> Optional[HostRecord]:
        """
        Update selected fields of a host (manual edits).

        Allowed: mac, hostname, hostname_source, vendor, vendor_source.
        A value of None clears the field.
        """
        allowed = {"mac", "hostname", "hostname_source", "vendor", "vendor_source"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self._ip_locks.hold(ip):
            if not fields:
                return self.get_host(ip)

            updates = [f"{name} = ?" for name in fields]
            params = list(fields.values()) + [ip]
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE hosts SET {', '.join(updates)} WHERE ip = ?", params
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
            return self.get_host(ip)

    def set_open_ports(
        self,
        ip: str,
        ports: list[OpenPort],
        scanned_at: Optional[datetime] = None,
    ) -> bool:
        """Replace the open ports of a host. Returns False if the host is unknown."""
        payload = json.dumps([p.to_dict() for p in sorted(ports, key=lambda p: p.port)])
        with self._ip_locks.hold(ip):
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "UPDATE hosts SET open_ports = ?, last_port_scan = ? WHERE ip = ?",
                    (payload, _iso_format(scanned_at or now_utc()), ip),
                )
                conn.commit()
                return cursor.rowcount > 0

    def delete_host(self, ip: str) -> bool:
        """Delete a host. Returns False if it did not exist."""
        with self._ip_locks.hold(ip):
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM hosts WHERE ip = ?", (ip,))
                conn.commit()
                return cursor.rowcount > 0

    def _row_to_host(self, row: sqlite3.Row) -> HostRecord:
        """Convert database row to HostRecord object."""
        return HostRecord(
            ip=row["ip"],
            mac=row["mac"],
            hostname=row["hostname"],
            vendor=row["vendor"],
            hostname_source=row["hostname_source"],
            vendor_source=row["vendor_source"],
            status=HostStatus(row["status"]),
            ping_latency_ms=row["ping_latency"],
            first_seen=_parse_datetime(row["first_seen"]) or now_utc(),
            last_seen=_parse_datetime(row["last_seen"]) or now_utc(),
            scan_count=row["scan_count"],
            open_ports=[
                OpenPort(port=p["port"], protocol=p.get("protocol", "tcp"))
                for p in json.loads(row["open_ports"] or "[]")
            ],
            last_port_scan=_parse_datetime(row["last_port_scan"]),
            additional_info=json.loads(row["additional_info"] or "{}"),
        )

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def add_history_entry(
        self,
        ip: str,
        status: HostStatus,
        ping_latency_ms: Optional[int] = None,
        seen_at: Optional[datetime] = None,
    ) -> None:
        """Record that a host was probed."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO host_history (ip, status, ping_latency, seen_at)
                VALUES (?, ?, ?, ?)
            """, (ip, status.value, ping_latency_ms, _iso_format(seen_at or now_utc())))
            conn.commit()

    def get_stats_history(
        self,
        hours: int = 24,
        now: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """
        Distinct hosts seen per 15 minute bucket over the last hours.

        Hours are capped at one week and at most the latest 48 buckets
        are returned.
        """
        hours = max(1, min(hours, MAX_HISTORY_HOURS))
        now = now or now_utc()
        cutoff = now - timedelta(hours=hours)

        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT ip, status, seen_at FROM host_history WHERE seen_at >= ? ORDER BY seen_at",
                (_iso_format(cutoff),),
            ).fetchall()

        buckets: dict[datetime, dict[str, set]] = {}
        for row in rows:
            seen_at = _parse_datetime(row["seen_at"])
            if seen_at is None:
                continue
            start = seen_at.replace(
                minute=seen_at.minute - seen_at.minute % HISTORY_BUCKET_MINUTES,
                second=0,
                microsecond=0,
            )
            bucket = buckets.setdefault(start, {"total": set(), "online": set(), "offline": set()})
            bucket["total"].add(row["ip"])
            if row["status"] in ("online", "offline"):
                bucket[row["status"]].add(row["ip"])

        result = [
            {
                "time": start.isoformat(),
                "total": len(b["total"]),
                "online": len(b["online"]),
                "offline": len(b["offline"]),
            }
            for start, b in sorted(buckets.items())
        ]
        return result[-MAX_HISTORY_BUCKETS:]

    def purge_history(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete history older than retention_days (0 deletes everything)."""
        with self._get_connection() as conn:
            if retention_days <= 0:
                cursor = conn.execute("DELETE FROM host_history")
            else:
                cutoff = (now or now_utc()) - timedelta(days=retention_days)
                cursor = conn.execute(
                    "DELETE FROM host_history WHERE seen_at < ?", (_iso_format(cutoff),)
                )
            conn.commit()
            deleted = cursor.rowcount

        if deleted:
            logger.info(f"Purged {deleted} history entries (retention {retention_days} days)")
        return deleted

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, int]:
        """Get host counts by status."""
        with self._get_connection() as conn:
            result = {"total": 0, "online": 0, "offline": 0, "unknown": 0}

            row = conn.execute("SELECT COUNT(*) as cnt FROM hosts").fetchone()
            result["total"] = row["cnt"]

            rows = conn.execute(
                "SELECT status, COUNT(*) as cnt FROM hosts GROUP BY status"
            ).fetchall()
            for row in rows:
                result[row["status"]] = row["cnt"]

            return result

    def clear(self) -> dict[str, int]:
        """
        Delete all hosts and history in one transaction.

        Returns: counts deleted
        """
        with self._get_connection() as conn:
            try:
                hosts = conn.execute("DELETE FROM hosts").rowcount
                history = conn.execute("DELETE FROM host_history").rowcount
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

        logger.info(f"Cleared {hosts} hosts and {history} history entries")
        return {"hosts": hosts, "history": history}

    # -------------------------------------------------------------------------
    # Latency monitoring flags
    # -------------------------------------------------------------------------

    def set_latency_monitoring(self, ip: str, enabled: bool) -> None:
        """Enable or disable latency monitoring for an IP."""
        now = _iso_format(now_utc())
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO latency_monitoring (ip, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(ip) DO UPDATE SET
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
            """, (ip, enabled, now, now))
            conn.commit()

    def get_latency_monitored_ips(self) -> list[str]:
        """Get IPs with latency monitoring enabled."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT ip FROM latency_monitoring WHERE enabled = TRUE"
            ).fetchall()
        return sorted((row["ip"] for row in rows), key=sort_key)

    # -------------------------------------------------------------------------
    # OUI vendors
    # -------------------------------------------------------------------------

    def replace_vendors(self, vendors: dict[str, str]) -> int:
        """Replace the whole OUI table in one transaction."""
        with self._get_connection() as conn:
            try:
                conn.execute("DELETE FROM oui_vendors")
                conn.executemany(
                    "INSERT OR REPLACE INTO oui_vendors (oui, vendor) VALUES (?, ?)",
                    vendors.items(),
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return len(vendors)

    def lookup_vendor(self, oui: str) -> Optional[str]:
        """Get vendor for an OUI in xx:xx:xx form."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT vendor FROM oui_vendors WHERE oui = ?", (oui.lower(),)
            ).fetchone()
        return row["vendor"] if row else None

    def count_vendors(self) -> int:
        with self._get_connection() as conn:
            row = conn.execute("SELECT COUNT(*) as cnt FROM oui_vendors").fetchone()
        return row["cnt"]
