"""Tests for the background port scanner."""

import asyncio
import pytest
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import nmap

from network_monitor._types import HostStatus
from network_monitor.host_db import HostDatabase
from network_monitor.port_scanner import PortScanner


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


def fake_nmap(open_ports_by_ip):
    """Build a PortScanner class mock returning the given tcp ports per host."""

    def factory():
        scanner = MagicMock()
        state = {}

        def scan(hosts, arguments):
            state["ip"] = hosts

        def host_info(ip):
            info = MagicMock()
            info.all_protocols.return_value = ["tcp"]
            info.__getitem__.side_effect = lambda proto: {
                port: {"state": "open"} for port in open_ports_by_ip[ip]
            } | {9999: {"state": "closed"}}
            return info

        scanner.scan.side_effect = scan
        scanner.all_hosts.side_effect = lambda: [state["ip"]] if state["ip"] in open_ports_by_ip else []
        scanner.__getitem__.side_effect = host_info
        return scanner

    return MagicMock(side_effect=factory)


class TestScanHost:
    """Tests for single host scans."""

    def test_open_ports_sorted(self, db: HostDatabase):
        """Should return only open ports in ascending order."""
        scanner = PortScanner(db)

        with patch("network_monitor.port_scanner.nmap.PortScanner",
                   fake_nmap({"192.168.1.10": [443, 22, 80]})):
            ports = scanner._scan_host("192.168.1.10")

        assert [p.port for p in ports] == [22, 80, 443]
        assert all(p.protocol == "tcp" for p in ports)

    def test_host_absent_from_results(self, db: HostDatabase):
        """Should return no ports for hosts nmap did not report."""
        scanner = PortScanner(db)

        with patch("network_monitor.port_scanner.nmap.PortScanner", fake_nmap({})):
            assert scanner._scan_host("192.168.1.11") == []

    def test_uses_connect_scan_arguments(self, db: HostDatabase):
        """Should run a connect scan without host discovery."""
        scanner = PortScanner(db, port_range="1-1024", host_timeout_seconds=30)
        mock_cls = MagicMock()
        mock_cls.return_value.all_hosts.return_value = []

        with patch("network_monitor.port_scanner.nmap.PortScanner", mock_cls):
            scanner._scan_host("192.168.1.10")

        mock_cls.return_value.scan.assert_called_once_with(
            hosts="192.168.1.10",
            arguments="-sT -Pn -p 1-1024 --host-timeout 30s",
        )

    def test_nmap_error_wrapped(self, db: HostDatabase):
        """nmap failures should surface as ExternalToolError."""
        from network_monitor.errors import ExternalToolError

        scanner = PortScanner(db)
        broken = MagicMock()
        broken.return_value.scan.side_effect = nmap.PortScannerError("nmap program was not found")

        with patch("network_monitor.port_scanner.nmap.PortScanner", broken):
            with pytest.raises(ExternalToolError):
                scanner._scan_host("192.168.1.10")


class TestRun:
    """Tests for background runs."""

    @pytest.mark.asyncio
    async def test_run_stores_ports(self, db: HostDatabase):
        """Should store open ports for each scanned host."""
        db.upsert_host("192.168.1.10", HostStatus.ONLINE)
        db.upsert_host("192.168.1.11", HostStatus.ONLINE)
        scanner = PortScanner(db)

        with patch("network_monitor.port_scanner.command_available", AsyncMock(return_value=True)), \
             patch("network_monitor.port_scanner.nmap.PortScanner",
                   fake_nmap({"192.168.1.10": [22], "192.168.1.11": [80, 443]})):
            assert await scanner.run(["192.168.1.11", "192.168.1.10"]) is True

        assert [p.port for p in db.get_host("192.168.1.10").open_ports] == [22]
        assert [p.port for p in db.get_host("192.168.1.11").open_ports] == [80, 443]
        state = scanner.state
        assert state.active is False
        assert state.current == 2
        assert state.total == 2

    @pytest.mark.asyncio
    async def test_nmap_missing_skips(self, db: HostDatabase):
        """Should skip the run when nmap is not installed."""
        scanner = PortScanner(db)
        scanner._scan_host = MagicMock()

        with patch("network_monitor.port_scanner.command_available", AsyncMock(return_value=False)):
            await scanner.run(["192.168.1.10"])

        scanner._scan_host.assert_not_called()
        assert scanner.active is False

    @pytest.mark.asyncio
    async def test_start_while_active_is_noop(self, db: HostDatabase):
        """A second start during a run should be ignored."""
        scanner = PortScanner(db)
        gate = asyncio.Event()

        async def slow_available():
            await gate.wait()
            return False

        with patch.object(scanner, "is_available", slow_available):
            assert scanner.start(["192.168.1.10"]) is True
            assert scanner.active is True
            assert scanner.start(["192.168.1.11"]) is False
            gate.set()
            await scanner.wait()

        assert scanner.active is False

    @pytest.mark.asyncio
    async def test_stop_between_hosts(self, db: HostDatabase):
        """Stop should take effect before the next host."""
        scanner = PortScanner(db)
        scanned = []

        def scan_host(ip):
            scanned.append(ip)
            scanner.stop()
            return []

        scanner._scan_host = scan_host

        with patch("network_monitor.port_scanner.command_available", AsyncMock(return_value=True)):
            await scanner.run(["192.168.1.10", "192.168.1.11", "192.168.1.12"])

        assert scanned == ["192.168.1.10"]
        assert scanner.active is False

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, db: HostDatabase):
        """Stop without a run should report False."""
        assert PortScanner(db).stop() is False

    @pytest.mark.asyncio
    async def test_host_cap(self, db: HostDatabase):
        """Should scan at most max_hosts hosts."""
        scanner = PortScanner(db, max_hosts=2)
        scanner._scan_host = MagicMock(return_value=[])

        with patch("network_monitor.port_scanner.command_available", AsyncMock(return_value=True)):
            await scanner.run([f"192.168.1.{i}" for i in range(1, 6)])

        assert scanner._scan_host.call_count == 2
        assert scanner.state.total == 2
