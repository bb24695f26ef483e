"""
Runtime settings persisted in the app_config table.

Operators change these through the API while the service is running,
so they live in the database rather than in MonitorConfig.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from ._types import (
    FULL_SCAN_INTERVALS,
    PLUGIN_SOURCES,
    REFRESH_INTERVALS,
    DefaultScanConfig,
    ProbeMode,
    PluginPriorityConfig,
    ScheduleConfig,
    now_utc,
)
from .errors import ValidationError
from .host_db import HostDatabase

logger = logging.getLogger(__name__)


SCHEDULE_KEY = "network_scan_unified_config"
PLUGIN_PRIORITY_KEY = "network_scan_plugin_priority"
DEFAULT_SCAN_KEY = "network_scan_default_config"
LAST_AUTO_KEY = "network_scan_last_auto"
OUI_UPDATE_KEY = "wireshark_vendors_last_update"


def validate_schedule(config: ScheduleConfig) -> None:
    """Raise ValidationError for intervals outside the allowed sets."""
    if config.full_scan.interval_minutes not in FULL_SCAN_INTERVALS:
        raise ValidationError(
            f"Full scan interval must be one of {list(FULL_SCAN_INTERVALS)} minutes",
            token=str(config.full_scan.interval_minutes),
        )
    if config.refresh.interval_minutes not in REFRESH_INTERVALS:
        raise ValidationError(
            f"Refresh interval must be one of {list(REFRESH_INTERVALS)} minutes",
            token=str(config.refresh.interval_minutes),
        )


def validate_priority(priority: list[str], field_name: str) -> None:
    """A priority list must order every plugin source exactly once."""
    if sorted(priority) != sorted(PLUGIN_SOURCES):
        raise ValidationError(
            f"{field_name} must be a permutation of {', '.join(PLUGIN_SOURCES)}",
            token=",".join(str(p) for p in priority),
        )


class RuntimeSettings:
    """Typed access to the settings operators edit at runtime."""

    def __init__(self, db: HostDatabase):
        self.db = db

    # -------------------------------------------------------------------------
    # Schedule
    # -------------------------------------------------------------------------

    def get_schedule(self) -> ScheduleConfig:
        data = self.db.get_setting(SCHEDULE_KEY)
        if not data:
            return ScheduleConfig()
        try:
            return ScheduleConfig.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Stored schedule is invalid, using defaults: {e}")
            return ScheduleConfig()

    def save_schedule(self, config: ScheduleConfig) -> ScheduleConfig:
        validate_schedule(config)
        self.db.set_setting(SCHEDULE_KEY, config.to_dict())
        logger.info(
            f"Schedule updated: enabled={config.enabled}, "
            f"full={config.full_scan.enabled}/{config.full_scan.interval_minutes}m, "
            f"refresh={config.refresh.enabled}/{config.refresh.interval_minutes}m"
        )
        return config

    def update_full_scan(
        self,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[int] = None,
        port_scan_enabled: Optional[bool] = None,
    ) -> ScheduleConfig:
        """Change the full scan half of the schedule."""
        config = self.get_schedule()
        if enabled is not None:
            config.full_scan.enabled = enabled
        if interval_minutes is not None:
            config.full_scan.interval_minutes = interval_minutes
        if port_scan_enabled is not None:
            config.full_scan.port_scan_enabled = port_scan_enabled
        return self.save_schedule(config)

    def update_refresh(
        self,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[int] = None,
        scan_type: Optional[ProbeMode] = None,
    ) -> ScheduleConfig:
        """Change the refresh half of the schedule."""
        config = self.get_schedule()
        if enabled is not None:
            config.refresh.enabled = enabled
        if interval_minutes is not None:
            config.refresh.interval_minutes = interval_minutes
        if scan_type is not None:
            config.refresh.scan_type = scan_type
        return self.save_schedule(config)

    # -------------------------------------------------------------------------
    # Plugin priority
    # -------------------------------------------------------------------------

    def get_plugin_priority(self) -> PluginPriorityConfig:
        data = self.db.get_setting(PLUGIN_PRIORITY_KEY)
        if not data:
            return PluginPriorityConfig()
        config = PluginPriorityConfig.from_dict(data)
        try:
            validate_priority(config.hostname_priority, "hostname_priority")
            validate_priority(config.vendor_priority, "vendor_priority")
        except ValidationError as e:
            logger.warning(f"Stored plugin priority is invalid, using defaults: {e}")
            return PluginPriorityConfig()
        return config

    def save_plugin_priority(self, config: PluginPriorityConfig) -> PluginPriorityConfig:
        validate_priority(config.hostname_priority, "hostname_priority")
        validate_priority(config.vendor_priority, "vendor_priority")
        self.db.set_setting(PLUGIN_PRIORITY_KEY, config.to_dict())
        logger.info(
            f"Plugin priority updated: hostname={config.hostname_priority}, "
            f"vendor={config.vendor_priority}"
        )
        return config

    def reset_plugin_priority(self) -> PluginPriorityConfig:
        return self.save_plugin_priority(PluginPriorityConfig())

    # -------------------------------------------------------------------------
    # Default scan range
    # -------------------------------------------------------------------------

    def get_default_scan(self) -> DefaultScanConfig:
        data = self.db.get_setting(DEFAULT_SCAN_KEY) or {}
        defaults = DefaultScanConfig()
        return DefaultScanConfig(
            default_range=data.get("default_range", defaults.default_range),
            default_auto_detect=bool(data.get("default_auto_detect", defaults.default_auto_detect)),
        )

    def save_default_scan(self, config: DefaultScanConfig) -> DefaultScanConfig:
        self.db.set_setting(DEFAULT_SCAN_KEY, config.to_dict())
        return config

    # -------------------------------------------------------------------------
    # Last automatic run
    # -------------------------------------------------------------------------

    def get_last_auto(self) -> Optional[dict[str, Any]]:
        return self.db.get_setting(LAST_AUTO_KEY)

    def get_last_auto_time(self, scan_kind: str) -> Optional[datetime]:
        """Timestamp of the last automatic run of the given kind (full or refresh)."""
        runs = self.db.get_setting(f"{LAST_AUTO_KEY}_{scan_kind}")
        if not runs:
            return None
        try:
            return datetime.fromisoformat(runs)
        except (TypeError, ValueError):
            return None

    def record_auto_run(
        self,
        scan_kind: str,
        scan_type: str,
        range_expr: Optional[str],
        at: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Remember the last automatic run, overall and per kind."""
        at = at or now_utc()
        entry = {
            "type": scan_kind,
            "scan_type": scan_type,
            "range": range_expr,
            "timestamp": at.isoformat(),
        }
        self.db.set_setting(LAST_AUTO_KEY, entry)
        self.db.set_setting(f"{LAST_AUTO_KEY}_{scan_kind}", at.isoformat())
        return entry

    # -------------------------------------------------------------------------
    # OUI update time
    # -------------------------------------------------------------------------

    def get_oui_last_update(self) -> Optional[str]:
        return self.db.get_setting(OUI_UPDATE_KEY)

    def record_oui_update(self, at: Optional[datetime] = None) -> None:
        self.db.set_setting(OUI_UPDATE_KEY, (at or now_utc()).isoformat())
