"""Tests for the HTTP API."""

import pytest
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from aiohttp import test_utils

from network_monitor._types import HostRecord, HostStatus, PortScanState, ProbeMode, ScanTrigger
from network_monitor.api import MonitorAPI
from network_monitor.errors import ConflictError, NotFoundError, ValidationError
from network_monitor.host_db import HostDatabase
from network_monitor.latency import LatencyMonitor
from network_monitor.settings import RuntimeSettings


@pytest.fixture
def db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    database = HostDatabase(db_path)
    yield database

    # Cleanup
    db_path.unlink(missing_ok=True)
    db_path.with_suffix(".db-wal").unlink(missing_ok=True)
    db_path.with_suffix(".db-shm").unlink(missing_ok=True)


@pytest.fixture
def api(db):
    """MonitorAPI over a real store with mocked scan machinery."""
    settings = RuntimeSettings(db)

    orchestrator = MagicMock()
    orchestrator.is_running = False
    orchestrator.start_scan = AsyncMock(return_value="job-1")
    orchestrator.refresh = AsyncMock(
        return_value={"scanned": 2, "online": 1, "offline": 1, "duration": 15}
    )
    orchestrator.scan_single = AsyncMock()
    orchestrator.rescan = AsyncMock()
    orchestrator.get_progress.return_value = None
    orchestrator.stop_scan.return_value = False

    scheduler = MagicMock()
    scheduler.next_deadlines.return_value = {"full": None, "refresh": None}

    port_scanner = MagicMock()
    port_scanner.state = PortScanState()
    port_scanner.active = False
    port_scanner.stop.return_value = False

    prober = MagicMock()
    latency = LatencyMonitor(db, prober)

    vendors = MagicMock()
    vendors.get_stats.return_value = {"total_vendors": 0, "last_update": None}
    vendors.update = AsyncMock(return_value={"source": "downloaded", "vendor_count": 32000})

    return MonitorAPI(db, settings, orchestrator, scheduler, port_scanner, latency, vendors)


@asynccontextmanager
async def serve(api: MonitorAPI):
    client = test_utils.TestClient(test_utils.TestServer(api.build_app()))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()


class TestScanRoutes:
    """Tests for scan control endpoints."""

    @pytest.mark.asyncio
    async def test_start_scan(self, api):
        """POST /scan starts a job."""
        async with serve(api) as client:
            resp = await client.post("/api/network-scan/scan", json={"range": "192.168.1.0/24"})
            data = await resp.json()

        assert resp.status == 200
        assert data == {"status": "started", "job_id": "job-1"}
        api.orchestrator.start_scan.assert_awaited_once_with(
            "192.168.1.0/24", False, ScanTrigger.MANUAL
        )

    @pytest.mark.asyncio
    async def test_start_scan_conflict(self, api):
        """A running job yields 409."""
        api.orchestrator.start_scan.side_effect = ConflictError("A full scan is already running")

        async with serve(api) as client:
            resp = await client.post("/api/network-scan/scan", json={})
            data = await resp.json()

        assert resp.status == 409
        assert data["code"] == "conflict"

    @pytest.mark.asyncio
    async def test_start_scan_invalid_range(self, api):
        """An invalid range yields 400."""
        api.orchestrator.start_scan.side_effect = ValidationError("Range too large: /16", token="/16")

        async with serve(api) as client:
            resp = await client.post("/api/network-scan/scan", json={"range": "10.0.0.0/16"})
            data = await resp.json()

        assert resp.status == 400
        assert "/16" in data["message"]

    @pytest.mark.asyncio
    async def test_malformed_json(self, api):
        """A body that is not JSON is a validation error."""
        async with serve(api) as client:
            resp = await client.post(
                "/api/network-scan/scan",
                data="{not json",
                headers={"Content-Type": "application/json"},
            )

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_progress_idle(self, api):
        """Progress reports idle without a job."""
        async with serve(api) as client:
            resp = await client.get("/api/network-scan/progress")
            assert await resp.json() == {"status": "idle"}

    @pytest.mark.asyncio
    async def test_refresh(self, api):
        """POST /refresh runs a refresh with the requested mode."""
        async with serve(api) as client:
            resp = await client.post("/api/network-scan/refresh", json={"scanType": "full"})
            data = await resp.json()

        assert data["scanType"] == "full"
        assert data["scanned"] == 2
        api.orchestrator.refresh.assert_awaited_once_with(ProbeMode.FULL, ScanTrigger.MANUAL)

    @pytest.mark.asyncio
    async def test_refresh_bad_scan_type(self, api):
        """Unknown probe modes are rejected."""
        async with serve(api) as client:
            resp = await client.post("/api/network-scan/refresh", json={"scanType": "deep"})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_port_scan_progress(self, api):
        """Port scan progress mirrors the scanner state."""
        async with serve(api) as client:
            resp = await client.get("/api/network-scan/port-scan-progress")
            data = await resp.json()

        assert data == {"active": False, "current": 0, "total": 0, "current_ip": None}


class TestHostRoutes:
    """Tests for host endpoints."""

    @pytest.mark.asyncio
    async def test_history_paging_and_sort(self, api, db):
        """GET /history sorts, filters and pages."""
        db.upsert_host("192.168.1.10", HostStatus.ONLINE)
        db.upsert_host("192.168.1.9", HostStatus.ONLINE)
        db.upsert_host("192.168.1.100", HostStatus.OFFLINE)

        async with serve(api) as client:
            resp = await client.get(
                "/api/network-scan/history",
                params={"sortBy": "ip", "sortOrder": "asc", "limit": "2"},
            )
            data = await resp.json()

        assert data["total"] == 3
        assert [h["ip"] for h in data["items"]] == ["192.168.1.9", "192.168.1.10"]

    @pytest.mark.asyncio
    async def test_history_invalid_sort(self, api):
        """Unknown sort columns are rejected."""
        async with serve(api) as client:
            resp = await client.get("/api/network-scan/history", params={"sortBy": "secret"})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_get_host(self, api, db):
        """GET /{ip} returns the host with its ban flag."""
        db.upsert_host("192.168.1.10", HostStatus.ONLINE, hostname="nas")

        async with serve(api) as client:
            resp = await client.get("/api/network-scan/192.168.1.10")
            data = await resp.json()
            missing = await client.get("/api/network-scan/192.168.1.11")

        assert data["hostname"] == "nas"
        assert data["banned"] is False
        assert missing.status == 404

    @pytest.mark.asyncio
    async def test_invalid_ip_in_path(self, api):
        """Malformed IPs in the path are rejected."""
        async with serve(api) as client:
            resp = await client.get("/api/network-scan/192.168.1.300")

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_set_hostname(self, api, db):
        """POST /{ip}/hostname stores a manual hostname."""
        db.upsert_host("192.168.1.10", HostStatus.ONLINE, hostname="nas", hostname_source="scanner")

        async with serve(api) as client:
            resp = await client.post(
                "/api/network-scan/192.168.1.10/hostname", json={"hostname": "backup-nas"}
            )
            empty = await client.post("/api/network-scan/192.168.1.10/hostname", json={"hostname": ""})

        assert resp.status == 200
        assert db.get_host("192.168.1.10").hostname == "backup-nas"
        assert db.get_host("192.168.1.10").hostname_source == "manual"
        assert empty.status == 400

    @pytest.mark.asyncio
    async def test_add_manual(self, api):
        """POST /add-manual delegates to the orchestrator."""
        api.orchestrator.scan_single.return_value = HostRecord(
            ip="192.168.1.50", status=HostStatus.ONLINE
        )

        async with serve(api) as client:
            resp = await client.post(
                "/api/network-scan/add-manual", json={"ip": "192.168.1.50", "hostname": "printer"}
            )
            data = await resp.json()

        assert data["status"] == "ok"
        assert data["host"]["ip"] == "192.168.1.50"
        api.orchestrator.scan_single.assert_awaited_once_with("192.168.1.50", None, "printer")

    @pytest.mark.asyncio
    async def test_rescan_unknown(self, api):
        """Rescanning an unknown host is 404."""
        api.orchestrator.rescan.side_effect = NotFoundError("Host 192.168.1.77 not found")

        async with serve(api) as client:
            resp = await client.post("/api/network-scan/192.168.1.77/rescan")

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, api, db):
        """DELETE /{ip} and DELETE /clear remove hosts."""
        db.upsert_host("192.168.1.10", HostStatus.ONLINE)
        db.upsert_host("192.168.1.11", HostStatus.ONLINE)
        db.add_history_entry("192.168.1.11", HostStatus.ONLINE)

        async with serve(api) as client:
            deleted = await client.delete("/api/network-scan/192.168.1.10")
            again = await client.delete("/api/network-scan/192.168.1.10")
            cleared = await client.delete("/api/network-scan/clear")
            data = await cleared.json()

        assert deleted.status == 200
        assert again.status == 404
        assert data["deleted"] == {"hosts": 1, "history": 1}
        assert db.get_stats()["total"] == 0


class TestBanRoutes:
    """Tests for the ban list endpoints."""

    @pytest.mark.asyncio
    async def test_ban_and_unban(self, api, db):
        """Ban, list and unban an IP."""
        async with serve(api) as client:
            added = await (await client.post(
                "/api/network-scan/blacklist/add", json={"ip": "192.168.1.20"}
            )).json()
            listed = await (await client.get("/api/network-scan/blacklist")).json()
            removed = await client.delete("/api/network-scan/blacklist/192.168.1.20")
            missing = await client.delete("/api/network-scan/blacklist/192.168.1.20")

        assert added == {"status": "ok", "added": True}
        assert listed == {"ips": ["192.168.1.20"]}
        assert removed.status == 200
        assert missing.status == 404

    @pytest.mark.asyncio
    async def test_ban_invalid(self, api):
        """Invalid IPs cannot be banned."""
        async with serve(api) as client:
            resp = await client.post("/api/network-scan/blacklist/add", json={"ip": "nope"})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_ban_body_not_utf8(self, api, db):
        """A body that cannot be decoded is a validation error."""
        async with serve(api) as client:
            resp = await client.post(
                "/api/network-scan/blacklist/add",
                data=b'{"ip": "\xff"}',
                headers={"Content-Type": "application/json"},
            )
            data = await resp.json()

        assert resp.status == 400
        assert data["code"] == "validation_error"
        assert db.get_banned_ips() == []


class TestConfigRoutes:
    """Tests for configuration endpoints."""

    @pytest.mark.asyncio
    async def test_full_scan_config(self, api):
        """POST /config updates the full scan schedule and wakes the scheduler."""
        async with serve(api) as client:
            resp = await client.post(
                "/api/network-scan/config",
                json={"enabled": True, "intervalMinutes": 60, "portScanEnabled": True},
            )
            data = await resp.json()
            fetched = await (await client.get("/api/network-scan/config")).json()

        assert data == {"enabled": True, "interval_minutes": 60, "port_scan_enabled": True}
        assert fetched == data
        api.scheduler.reschedule.assert_called_once()

    @pytest.mark.asyncio
    async def test_invalid_interval(self, api):
        """Intervals outside the allowed set are rejected."""
        async with serve(api) as client:
            resp = await client.post("/api/network-scan/refresh-config", json={"intervalMinutes": 7})

        assert resp.status == 400
        api.scheduler.reschedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_unified_config_partial(self, api):
        """Partial updates keep untouched fields."""
        async with serve(api) as client:
            await client.post("/api/network-scan/unified-config", json={"enabled": True})
            resp = await client.post(
                "/api/network-scan/unified-config",
                json={"refresh": {"enabled": True, "scanType": "full"}},
            )
            data = await resp.json()

        assert data["enabled"] is True
        assert data["refresh"]["enabled"] is True
        assert data["refresh"]["scan_type"] == "full"
        assert data["refresh"]["interval_minutes"] == 10

    @pytest.mark.asyncio
    async def test_default_config_validates_range(self, api):
        """The default range must parse."""
        async with serve(api) as client:
            bad = await client.post(
                "/api/network-scan/default-config", json={"defaultRange": "8.8.8.0/24"}
            )
            good = await client.post(
                "/api/network-scan/default-config", json={"defaultRange": "10.0.0.0/24"}
            )
            data = await good.json()

        assert bad.status == 400
        assert data["default_range"] == "10.0.0.0/24"

    @pytest.mark.asyncio
    async def test_plugin_priority(self, api):
        """Priority lists must be permutations; reset restores defaults."""
        async with serve(api) as client:
            ok = await client.post(
                "/api/network-scan/plugin-priority-config",
                json={"hostnamePriority": ["scanner", "freebox", "unifi"],
                      "overwriteExisting": {"hostname": False}},
            )
            bad = await client.post(
                "/api/network-scan/plugin-priority-config",
                json={"vendorPriority": ["scanner"]},
            )
            reset = await client.post(
                "/api/network-scan/plugin-priority-config", json={"reset": True}
            )
            data = await ok.json()
            reset_data = await reset.json()

        assert data["hostname_priority"] == ["scanner", "freebox", "unifi"]
        assert data["overwrite_existing"] == {"hostname": False, "vendor": True}
        assert bad.status == 400
        assert reset_data["hostname_priority"] == ["freebox", "unifi", "scanner"]

    @pytest.mark.asyncio
    async def test_auto_status(self, api):
        """Auto status reports config, next runs and last run."""
        async with serve(api) as client:
            data = await (await client.get("/api/network-scan/auto-status")).json()

        assert data["scan_running"] is False
        assert data["next_runs"] == {"full": None, "refresh": None}
        assert data["last_auto"] is None


class TestStatsRoutes:
    """Tests for statistics and maintenance endpoints."""

    @pytest.mark.asyncio
    async def test_stats(self, api, db):
        """GET /stats counts hosts by status."""
        db.upsert_host("192.168.1.10", HostStatus.ONLINE)

        async with serve(api) as client:
            data = await (await client.get("/api/network-scan/stats")).json()

        assert data == {"total": 1, "online": 1, "offline": 0, "unknown": 0}

    @pytest.mark.asyncio
    async def test_stats_history(self, api, db):
        """GET /stats-history returns buckets."""
        db.add_history_entry("192.168.1.10", HostStatus.ONLINE)

        async with serve(api) as client:
            data = await (await client.get("/api/network-scan/stats-history", params={"hours": "1"})).json()

        assert len(data) == 1
        assert data[0]["online"] == 1

    @pytest.mark.asyncio
    async def test_purge_history(self, api, db):
        """POST /purge/history with 0 days deletes everything."""
        db.add_history_entry("192.168.1.10", HostStatus.ONLINE)

        async with serve(api) as client:
            resp = await client.post("/api/network-scan/purge/history", json={"retentionDays": 0})
            negative = await client.post("/api/network-scan/purge/history", json={"retentionDays": -1})

        assert (await resp.json())["deleted"] == 1
        assert negative.status == 400

    @pytest.mark.asyncio
    async def test_update_vendors(self, api):
        """POST /update-wireshark-vendors forwards the force flag."""
        async with serve(api) as client:
            data = await (await client.post(
                "/api/network-scan/update-wireshark-vendors", json={"force": True}
            )).json()

        assert data["vendor_count"] == 32000
        api.vendors.update.assert_awaited_once_with(force_download=True)

    @pytest.mark.asyncio
    async def test_health(self, api):
        """GET /api/health reports service state."""
        async with serve(api) as client:
            data = await (await client.get("/api/health")).json()

        assert data["status"] == "ok"
        assert data["service"] == "network-monitor"
        assert data["scan_running"] is False


class TestLatencyRoutes:
    """Tests for latency monitoring endpoints."""

    @pytest.mark.asyncio
    async def test_enable_and_status(self, api):
        """Enable a host and read batch status."""
        async with serve(api) as client:
            enabled = await client.post("/api/latency-monitoring/enable/192.168.1.3")
            status = await (await client.post(
                "/api/latency-monitoring/status/batch",
                json={"ips": ["192.168.1.3", "192.168.1.4"]},
            )).json()

        assert enabled.status == 200
        assert status == {"192.168.1.3": True, "192.168.1.4": False}

    @pytest.mark.asyncio
    async def test_stats_and_measurements(self, api):
        """Statistics and raw samples per host."""
        api.latency.enable("192.168.1.3")
        api.latency.record_sample("192.168.1.3", 4.0)
        api.latency.record_sample("192.168.1.3", None)

        async with serve(api) as client:
            stats = await (await client.get("/api/latency-monitoring/stats/192.168.1.3")).json()
            samples = await (await client.get("/api/latency-monitoring/measurements/192.168.1.3")).json()
            batch = await (await client.post(
                "/api/latency-monitoring/stats/batch", json={"ips": ["192.168.1.3"]}
            )).json()

        assert stats["packet_loss_percent"] == 50.0
        assert stats["total_measurements"] == 2
        assert [s["packet_loss"] for s in samples] == [False, True]
        assert batch == {"192.168.1.3": {"avg1h": 4.0, "max": 4.0}}
