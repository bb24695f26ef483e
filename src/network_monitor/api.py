"""
HTTP API for the network monitor.

Thin aiohttp layer over the engine, mounted under /api/network-scan and
/api/latency-monitoring. Request bodies are validated with pydantic
models; domain errors map to status codes:

    ValidationError -> 400, NotFoundError -> 404, ConflictError -> 409,
    anything else   -> 500

Errors are returned as {"status": "error", "message": ..., "code": ...}.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as RequestValidationError

from ._types import (
    DefaultScanConfig,
    HostStatus,
    OverwritePolicy,
    PluginPriorityConfig,
    ProbeMode,
    ScanTrigger,
    SourceId,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .host_db import HostDatabase
from .latency import LatencyMonitor
from .orchestrator import ScanOrchestrator
from .port_scanner import PortScanner
from .range_parser import DEFAULT_MAX_HOSTS, is_valid_ipv4, parse_range
from .scheduler import ScanScheduler
from .settings import RuntimeSettings
from .vendors import VendorDatabase

logger = logging.getLogger(__name__)

SCAN_PREFIX = "/api/network-scan"
LATENCY_PREFIX = "/api/latency-monitoring"

# Keeps literal routes (/progress, /clear, ...) from matching {ip}
IP_PATTERN = r"{ip:[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+}"


# -----------------------------------------------------------------------------
# Request models
# -----------------------------------------------------------------------------

class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ScanRequest(_Request):
    range: Optional[str] = None
    auto_detect: bool = Field(False, alias="autoDetect")


class RefreshRequest(_Request):
    scan_type: ProbeMode = Field(ProbeMode.QUICK, alias="scanType")


class FullScanConfigRequest(_Request):
    enabled: Optional[bool] = None
    interval_minutes: Optional[int] = Field(None, alias="intervalMinutes")
    port_scan_enabled: Optional[bool] = Field(None, alias="portScanEnabled")


class RefreshConfigRequest(_Request):
    enabled: Optional[bool] = None
    interval_minutes: Optional[int] = Field(None, alias="intervalMinutes")
    scan_type: Optional[ProbeMode] = Field(None, alias="scanType")


class UnifiedConfigRequest(_Request):
    enabled: Optional[bool] = None
    full_scan: Optional[FullScanConfigRequest] = Field(None, alias="fullScan")
    refresh: Optional[RefreshConfigRequest] = None


class DefaultConfigRequest(_Request):
    default_range: Optional[str] = Field(None, alias="defaultRange")
    default_auto_detect: Optional[bool] = Field(None, alias="defaultAutoDetect")


class OverwriteRequest(_Request):
    hostname: Optional[bool] = None
    vendor: Optional[bool] = None


class PluginPriorityRequest(_Request):
    reset: bool = False
    hostname_priority: Optional[list[str]] = Field(None, alias="hostnamePriority")
    vendor_priority: Optional[list[str]] = Field(None, alias="vendorPriority")
    overwrite_existing: Optional[OverwriteRequest] = Field(None, alias="overwriteExisting")


class AddManualRequest(_Request):
    ip: str
    mac: Optional[str] = None
    hostname: Optional[str] = None


class HostnameRequest(_Request):
    hostname: str = Field(..., min_length=1)


class IpRequest(_Request):
    ip: str


class IpsRequest(_Request):
    ips: list[str]


class PurgeHistoryRequest(_Request):
    retention_days: int = Field(..., ge=0, alias="retentionDays")


class VendorUpdateRequest(_Request):
    force: bool = False


class HistoryQuery(_Request):
    sort_by: str = Field("last_seen", alias="sortBy")
    sort_order: str = Field("desc", alias="sortOrder")
    limit: int = Field(100, ge=0)
    offset: int = Field(0, ge=0)
    status: Optional[HostStatus] = None
    search: Optional[str] = None
    ip: Optional[str] = None


class StatsHistoryQuery(_Request):
    hours: int = Field(24, ge=1)


def _parse(model: type[BaseModel], data: Any) -> Any:
    """Validate request data, raising the domain ValidationError."""
    try:
        return model.model_validate(data or {})
    except RequestValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid request: {details}") from e


def _error_response(e: Exception) -> web.Response:
    if isinstance(e, ValidationError):
        status, code = 400, "validation_error"
    elif isinstance(e, NotFoundError):
        status, code = 404, "not_found"
    elif isinstance(e, ConflictError):
        status, code = 409, "conflict"
    else:
        logger.error(f"Unhandled API error: {e}")
        status, code = 500, "internal_error"
    return web.json_response(
        {"status": "error", "message": str(e), "code": code},
        status=status,
    )


class MonitorAPI:
    """Route handlers over the engine components."""

    def __init__(
        self,
        db: HostDatabase,
        settings: RuntimeSettings,
        orchestrator: ScanOrchestrator,
        scheduler: ScanScheduler,
        port_scanner: PortScanner,
        latency: LatencyMonitor,
        vendors: VendorDatabase,
        max_scan_hosts: int = DEFAULT_MAX_HOSTS,
    ):
        self.db = db
        self.settings = settings
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.port_scanner = port_scanner
        self.latency = latency
        self.vendors = vendors
        self.max_scan_hosts = max_scan_hosts

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes."""
        app = web.Application()
        r = app.router
        s = SCAN_PREFIX

        r.add_post(f"{s}/scan", self._handle_scan)
        r.add_post(f"{s}/scan-stop", self._handle_scan_stop)
        r.add_get(f"{s}/progress", self._handle_progress)
        r.add_post(f"{s}/refresh", self._handle_refresh)
        r.add_get(f"{s}/port-scan-progress", self._handle_port_scan_progress)
        r.add_post(f"{s}/port-scan-stop", self._handle_port_scan_stop)
        r.add_get(f"{s}/history", self._handle_history)

        r.add_get(f"{s}/config", self._handle_get_full_config)
        r.add_post(f"{s}/config", self._handle_set_full_config)
        r.add_get(f"{s}/refresh-config", self._handle_get_refresh_config)
        r.add_post(f"{s}/refresh-config", self._handle_set_refresh_config)
        r.add_get(f"{s}/unified-config", self._handle_get_unified_config)
        r.add_post(f"{s}/unified-config", self._handle_set_unified_config)
        r.add_get(f"{s}/default-config", self._handle_get_default_config)
        r.add_post(f"{s}/default-config", self._handle_set_default_config)
        r.add_get(f"{s}/plugin-priority-config", self._handle_get_plugin_priority)
        r.add_post(f"{s}/plugin-priority-config", self._handle_set_plugin_priority)
        r.add_get(f"{s}/auto-status", self._handle_auto_status)

        r.add_post(f"{s}/add-manual", self._handle_add_manual)
        r.add_delete(f"{s}/clear", self._handle_clear)
        r.add_get(f"{s}/blacklist", self._handle_get_blacklist)
        r.add_post(f"{s}/blacklist/add", self._handle_ban)
        r.add_delete(f"{s}/blacklist/{IP_PATTERN}", self._handle_unban)
        r.add_get(f"{s}/stats", self._handle_stats)
        r.add_get(f"{s}/stats-history", self._handle_stats_history)
        r.add_get(f"{s}/wireshark-vendor-stats", self._handle_vendor_stats)
        r.add_post(f"{s}/update-wireshark-vendors", self._handle_update_vendors)
        r.add_post(f"{s}/purge/history", self._handle_purge_history)

        r.add_get(f"{s}/{IP_PATTERN}", self._handle_get_host)
        r.add_post(f"{s}/{IP_PATTERN}/hostname", self._handle_set_hostname)
        r.add_post(f"{s}/{IP_PATTERN}/rescan", self._handle_rescan)
        r.add_delete(f"{s}/{IP_PATTERN}", self._handle_delete_host)

        lat = LATENCY_PREFIX
        r.add_post(f"{lat}/enable/{IP_PATTERN}", self._handle_latency_enable)
        r.add_post(f"{lat}/disable/{IP_PATTERN}", self._handle_latency_disable)
        r.add_post(f"{lat}/status/batch", self._handle_latency_status_batch)
        r.add_post(f"{lat}/stats/batch", self._handle_latency_stats_batch)
        r.add_get(f"{lat}/stats/{IP_PATTERN}", self._handle_latency_stats)
        r.add_get(f"{lat}/measurements/{IP_PATTERN}", self._handle_latency_measurements)

        r.add_get("/api/health", self._handle_health)
        return app

    @staticmethod
    async def _body(request: web.Request) -> dict:
        if not request.body_exists:
            return {}
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body is not valid JSON")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    @staticmethod
    def _ip(request: web.Request) -> str:
        ip = request.match_info["ip"]
        if not is_valid_ipv4(ip):
            raise ValidationError(f"Invalid IP address: {ip}", token=ip)
        return ip

    # -------------------------------------------------------------------------
    # Scans
    # -------------------------------------------------------------------------

    async def _handle_scan(self, request: web.Request) -> web.Response:
        """Handle POST /scan."""
        try:
            body = _parse(ScanRequest, await self._body(request))
            job_id = await self.orchestrator.start_scan(
                body.range, body.auto_detect, ScanTrigger.MANUAL
            )
            return web.json_response({
                "status": "started",
                "job_id": job_id,
            })
        except Exception as e:
            return _error_response(e)

    async def _handle_scan_stop(self, request: web.Request) -> web.Response:
        """Handle POST /scan-stop."""
        try:
            return web.json_response({"stopped": self.orchestrator.stop_scan()})
        except Exception as e:
            return _error_response(e)

    async def _handle_progress(self, request: web.Request) -> web.Response:
        """Handle GET /progress."""
        try:
            progress = self.orchestrator.get_progress()
            return web.json_response(progress or {"status": "idle"})
        except Exception as e:
            return _error_response(e)

    async def _handle_refresh(self, request: web.Request) -> web.Response:
        """Handle POST /refresh."""
        try:
            body = _parse(RefreshRequest, await self._body(request))
            summary = await self.orchestrator.refresh(body.scan_type, ScanTrigger.MANUAL)
            return web.json_response({"scanType": body.scan_type.value, **summary})
        except Exception as e:
            return _error_response(e)

    async def _handle_port_scan_progress(self, request: web.Request) -> web.Response:
        """Handle GET /port-scan-progress."""
        return web.json_response(self.port_scanner.state.to_dict())

    async def _handle_port_scan_stop(self, request: web.Request) -> web.Response:
        """Handle POST /port-scan-stop."""
        return web.json_response({"stopped": self.port_scanner.stop()})

    async def _handle_history(self, request: web.Request) -> web.Response:
        """Handle GET /history."""
        try:
            query = _parse(HistoryQuery, dict(request.query))
            hosts, total = self.db.find_hosts(
                status=query.status,
                ip_prefix=query.ip,
                search=query.search,
                sort_by=query.sort_by,
                sort_order=query.sort_order,
                limit=query.limit,
                offset=query.offset,
            )
            return web.json_response({
                "items": [h.to_dict() for h in hosts],
                "total": total,
                "limit": query.limit,
                "offset": query.offset,
            })
        except Exception as e:
            return _error_response(e)

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    async def _handle_get_full_config(self, request: web.Request) -> web.Response:
        """Handle GET /config."""
        return web.json_response(self.settings.get_schedule().to_dict()["full_scan"])

    async def _handle_set_full_config(self, request: web.Request) -> web.Response:
        """Handle POST /config."""
        try:
            body = _parse(FullScanConfigRequest, await self._body(request))
            config = self.settings.update_full_scan(
                enabled=body.enabled,
                interval_minutes=body.interval_minutes,
                port_scan_enabled=body.port_scan_enabled,
            )
            self.scheduler.reschedule()
            return web.json_response(config.to_dict()["full_scan"])
        except Exception as e:
            return _error_response(e)

    async def _handle_get_refresh_config(self, request: web.Request) -> web.Response:
        """Handle GET /refresh-config."""
        return web.json_response(self.settings.get_schedule().to_dict()["refresh"])

    async def _handle_set_refresh_config(self, request: web.Request) -> web.Response:
        """Handle POST /refresh-config."""
        try:
            body = _parse(RefreshConfigRequest, await self._body(request))
            config = self.settings.update_refresh(
                enabled=body.enabled,
                interval_minutes=body.interval_minutes,
                scan_type=body.scan_type,
            )
            self.scheduler.reschedule()
            return web.json_response(config.to_dict()["refresh"])
        except Exception as e:
            return _error_response(e)

    async def _handle_get_unified_config(self, request: web.Request) -> web.Response:
        """Handle GET /unified-config."""
        return web.json_response(self.settings.get_schedule().to_dict())

    async def _handle_set_unified_config(self, request: web.Request) -> web.Response:
        """Handle POST /unified-config."""
        try:
            body = _parse(UnifiedConfigRequest, await self._body(request))
            config = self.settings.get_schedule()

            if body.enabled is not None:
                config.enabled = body.enabled
            if body.full_scan:
                if body.full_scan.enabled is not None:
                    config.full_scan.enabled = body.full_scan.enabled
                if body.full_scan.interval_minutes is not None:
                    config.full_scan.interval_minutes = body.full_scan.interval_minutes
                if body.full_scan.port_scan_enabled is not None:
                    config.full_scan.port_scan_enabled = body.full_scan.port_scan_enabled
            if body.refresh:
                if body.refresh.enabled is not None:
                    config.refresh.enabled = body.refresh.enabled
                if body.refresh.interval_minutes is not None:
                    config.refresh.interval_minutes = body.refresh.interval_minutes
                if body.refresh.scan_type is not None:
                    config.refresh.scan_type = body.refresh.scan_type

            self.settings.save_schedule(config)
            self.scheduler.reschedule()
            return web.json_response(config.to_dict())
        except Exception as e:
            return _error_response(e)

    async def _handle_get_default_config(self, request: web.Request) -> web.Response:
        """Handle GET /default-config."""
        return web.json_response(self.settings.get_default_scan().to_dict())

    async def _handle_set_default_config(self, request: web.Request) -> web.Response:
        """Handle POST /default-config."""
        try:
            body = _parse(DefaultConfigRequest, await self._body(request))
            current = self.settings.get_default_scan()
            config = DefaultScanConfig(
                default_range=current.default_range,
                default_auto_detect=current.default_auto_detect,
            )
            if body.default_range is not None:
                parse_range(body.default_range, max_hosts=self.max_scan_hosts)
                config.default_range = body.default_range.strip()
            if body.default_auto_detect is not None:
                config.default_auto_detect = body.default_auto_detect

            self.settings.save_default_scan(config)
            return web.json_response(config.to_dict())
        except Exception as e:
            return _error_response(e)

    async def _handle_get_plugin_priority(self, request: web.Request) -> web.Response:
        """Handle GET /plugin-priority-config."""
        return web.json_response(self.settings.get_plugin_priority().to_dict())

    async def _handle_set_plugin_priority(self, request: web.Request) -> web.Response:
        """Handle POST /plugin-priority-config."""
        try:
            body = _parse(PluginPriorityRequest, await self._body(request))
            if body.reset:
                config = self.settings.reset_plugin_priority()
                return web.json_response(config.to_dict())

            current = self.settings.get_plugin_priority()
            overwrite = body.overwrite_existing
            config = PluginPriorityConfig(
                hostname_priority=body.hostname_priority or current.hostname_priority,
                vendor_priority=body.vendor_priority or current.vendor_priority,
                overwrite_existing=OverwritePolicy(
                    hostname=(
                        overwrite.hostname
                        if overwrite and overwrite.hostname is not None
                        else current.overwrite_existing.hostname
                    ),
                    vendor=(
                        overwrite.vendor
                        if overwrite and overwrite.vendor is not None
                        else current.overwrite_existing.vendor
                    ),
                ),
            )
            self.settings.save_plugin_priority(config)
            return web.json_response(config.to_dict())
        except Exception as e:
            return _error_response(e)

    async def _handle_auto_status(self, request: web.Request) -> web.Response:
        """Handle GET /auto-status."""
        try:
            return web.json_response({
                "config": self.settings.get_schedule().to_dict(),
                "next_runs": self.scheduler.next_deadlines(),
                "last_auto": self.settings.get_last_auto(),
                "scan_running": self.orchestrator.is_running,
            })
        except Exception as e:
            return _error_response(e)

    # -------------------------------------------------------------------------
    # Hosts
    # -------------------------------------------------------------------------

    async def _handle_add_manual(self, request: web.Request) -> web.Response:
        """Handle POST /add-manual."""
        try:
            body = _parse(AddManualRequest, await self._body(request))
            record = await self.orchestrator.scan_single(body.ip, body.mac, body.hostname)
            return web.json_response({"status": "ok", "host": record.to_dict()})
        except Exception as e:
            return _error_response(e)

    async def _handle_get_host(self, request: web.Request) -> web.Response:
        """Handle GET /{ip}."""
        try:
            ip = self._ip(request)
            host = self.db.get_host(ip)
            if not host:
                raise NotFoundError(f"Host {ip} not found")
            return web.json_response({
                **host.to_dict(),
                "banned": self.db.is_banned(ip),
            })
        except Exception as e:
            return _error_response(e)

    async def _handle_set_hostname(self, request: web.Request) -> web.Response:
        """Handle POST /{ip}/hostname."""
        try:
            ip = self._ip(request)
            body = _parse(HostnameRequest, await self._body(request))
            host = self.db.update_host(
                ip,
                hostname=body.hostname.strip(),
                hostname_source=SourceId.MANUAL.value,
            )
            if not host:
                raise NotFoundError(f"Host {ip} not found")
            return web.json_response({"status": "ok", "host": host.to_dict()})
        except Exception as e:
            return _error_response(e)

    async def _handle_rescan(self, request: web.Request) -> web.Response:
        """Handle POST /{ip}/rescan."""
        try:
            record = await self.orchestrator.rescan(self._ip(request))
            return web.json_response({"status": "ok", "host": record.to_dict()})
        except Exception as e:
            return _error_response(e)

    async def _handle_delete_host(self, request: web.Request) -> web.Response:
        """Handle DELETE /{ip}."""
        try:
            ip = self._ip(request)
            if not self.db.delete_host(ip):
                raise NotFoundError(f"Host {ip} not found")
            return web.json_response({"status": "ok"})
        except Exception as e:
            return _error_response(e)

    async def _handle_clear(self, request: web.Request) -> web.Response:
        """Handle DELETE /clear."""
        try:
            deleted = self.db.clear()
            return web.json_response({"status": "ok", "deleted": deleted})
        except Exception as e:
            return _error_response(e)

    # -------------------------------------------------------------------------
    # Ban list
    # -------------------------------------------------------------------------

    async def _handle_get_blacklist(self, request: web.Request) -> web.Response:
        """Handle GET /blacklist."""
        return web.json_response({"ips": self.db.get_banned_ips()})

    async def _handle_ban(self, request: web.Request) -> web.Response:
        """Handle POST /blacklist/add."""
        try:
            body = _parse(IpRequest, await self._body(request))
            added = self.db.ban_ip(body.ip.strip())
            return web.json_response({"status": "ok", "added": added})
        except Exception as e:
            return _error_response(e)

    async def _handle_unban(self, request: web.Request) -> web.Response:
        """Handle DELETE /blacklist/{ip}."""
        try:
            ip = self._ip(request)
            if not self.db.unban_ip(ip):
                raise NotFoundError(f"IP {ip} is not banned")
            return web.json_response({"status": "ok"})
        except Exception as e:
            return _error_response(e)

    # -------------------------------------------------------------------------
    # Statistics and maintenance
    # -------------------------------------------------------------------------

    async def _handle_stats(self, request: web.Request) -> web.Response:
        """Handle GET /stats."""
        try:
            return web.json_response(self.db.get_stats())
        except Exception as e:
            return _error_response(e)

    async def _handle_stats_history(self, request: web.Request) -> web.Response:
        """Handle GET /stats-history."""
        try:
            query = _parse(StatsHistoryQuery, dict(request.query))
            return web.json_response(self.db.get_stats_history(query.hours))
        except Exception as e:
            return _error_response(e)

    async def _handle_vendor_stats(self, request: web.Request) -> web.Response:
        """Handle GET /wireshark-vendor-stats."""
        try:
            return web.json_response(self.vendors.get_stats())
        except Exception as e:
            return _error_response(e)

    async def _handle_update_vendors(self, request: web.Request) -> web.Response:
        """Handle POST /update-wireshark-vendors."""
        try:
            body = _parse(VendorUpdateRequest, await self._body(request))
            result = await self.vendors.update(force_download=body.force)
            return web.json_response({"status": "ok", **result})
        except Exception as e:
            return _error_response(e)

    async def _handle_purge_history(self, request: web.Request) -> web.Response:
        """Handle POST /purge/history."""
        try:
            body = _parse(PurgeHistoryRequest, await self._body(request))
            deleted = self.db.purge_history(body.retention_days)
            return web.json_response({"status": "ok", "deleted": deleted})
        except Exception as e:
            return _error_response(e)

    # -------------------------------------------------------------------------
    # Latency monitoring
    # -------------------------------------------------------------------------

    async def _handle_latency_enable(self, request: web.Request) -> web.Response:
        """Handle POST /api/latency-monitoring/enable/{ip}."""
        try:
            ip = self._ip(request)
            self.latency.enable(ip)
            return web.json_response({"status": "ok", "ip": ip, "enabled": True})
        except Exception as e:
            return _error_response(e)

    async def _handle_latency_disable(self, request: web.Request) -> web.Response:
        """Handle POST /api/latency-monitoring/disable/{ip}."""
        try:
            ip = self._ip(request)
            self.latency.disable(ip)
            return web.json_response({"status": "ok", "ip": ip, "enabled": False})
        except Exception as e:
            return _error_response(e)

    async def _handle_latency_status_batch(self, request: web.Request) -> web.Response:
        """Handle POST /api/latency-monitoring/status/batch."""
        try:
            body = _parse(IpsRequest, await self._body(request))
            return web.json_response(self.latency.status(body.ips))
        except Exception as e:
            return _error_response(e)

    async def _handle_latency_stats_batch(self, request: web.Request) -> web.Response:
        """Handle POST /api/latency-monitoring/stats/batch."""
        try:
            body = _parse(IpsRequest, await self._body(request))
            return web.json_response(self.latency.stats(body.ips))
        except Exception as e:
            return _error_response(e)

    async def _handle_latency_stats(self, request: web.Request) -> web.Response:
        """Handle GET /api/latency-monitoring/stats/{ip}."""
        try:
            return web.json_response(self.latency.statistics(self._ip(request)))
        except Exception as e:
            return _error_response(e)

    async def _handle_latency_measurements(self, request: web.Request) -> web.Response:
        """Handle GET /api/latency-monitoring/measurements/{ip}."""
        try:
            samples = self.latency.measurements(self._ip(request))
            return web.json_response([s.to_dict() for s in samples])
        except Exception as e:
            return _error_response(e)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        stats = self.db.get_stats()
        return web.json_response({
            "status": "ok",
            "service": "network-monitor",
            "hosts": stats["total"],
            "online": stats["online"],
            "scan_running": self.orchestrator.is_running,
            "port_scan_active": self.port_scanner.active,
        })
