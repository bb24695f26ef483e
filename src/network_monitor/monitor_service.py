"""
Network Monitor Service - process entry point.

Wires the engine together and runs it in one asyncio process:
- API server (aiohttp)
- Scan scheduler loop
- Latency sampling loop
- Background port scans, started by the orchestrator
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from aiohttp import web

from .api import MonitorAPI
from .config import MonitorConfig
from .host_db import HostDatabase
from .latency import LatencyMonitor
from .orchestrator import ScanOrchestrator
from .port_scanner import PortScanner
from .prober import HostProber
from .scheduler import ScanScheduler
from .settings import RuntimeSettings
from .sources import InventorySource
from .vendors import VendorDatabase

logger = logging.getLogger(__name__)


class NetworkMonitorService:
    """
    Main network monitor service.

    Owns every engine component and their lifecycles.
    """

    def __init__(self, config: MonitorConfig):
        """
        Initialize monitor service.

        Args:
            config: Monitor configuration
        """
        self.config = config
        self.db = HostDatabase(config.db_path)
        self.settings = RuntimeSettings(self.db)
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.vendors = VendorDatabase(
            self.db,
            self.settings,
            oui_path=config.oui_path,
            url=config.oui_url,
            min_count=config.vendor_min_count,
        )
        self.prober = HostProber(
            vendors=self.vendors,
            max_concurrent=config.max_concurrent_pings,
            timeout_seconds=config.ping_timeout_seconds,
            batch_delay_ms=config.batch_delay_ms,
        )
        self.port_scanner = PortScanner(
            self.db,
            port_range=config.port_scan_range,
            host_timeout_seconds=config.port_scan_timeout_seconds,
            max_hosts=config.max_port_scan_hosts,
        )
        self.inventories = [
            InventorySource(
                name,
                url=source.url,
                enabled=source.enabled,
                refresh_interval_seconds=source.refresh_interval_seconds,
            )
            for name, source in config.sources.items()
        ]
        for inventory in self.inventories:
            if inventory.enabled:
                logger.info(f"{inventory.name} inventory enabled ({inventory.url})")

        self.orchestrator = ScanOrchestrator(
            self.db,
            self.settings,
            self.prober,
            self.port_scanner,
            inventories=self.inventories,
            max_scan_hosts=config.max_scan_hosts,
            history_retention_days=config.history_retention_days,
        )
        self.scheduler = ScanScheduler(self.orchestrator, self.settings)
        self.latency = LatencyMonitor(
            self.db,
            self.prober,
            interval_seconds=config.latency_interval_seconds,
            retention_hours=config.latency_retention_hours,
        )

        # API server
        self._api_app: Optional[web.Application] = None
        self._api_runner: Optional[web.AppRunner] = None

    def build_api(self) -> web.Application:
        return MonitorAPI(
            self.db,
            self.settings,
            self.orchestrator,
            self.scheduler,
            self.port_scanner,
            self.latency,
            self.vendors,
            max_scan_hosts=self.config.max_scan_hosts,
        ).build_app()

    async def start(self) -> None:
        """Start the monitor service and run until stopped."""
        logger.info("Starting Network Monitor Service")
        self._running = True

        await self._start_api_server()
        await self.scheduler.start()
        await self.latency.start()

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the monitor service."""
        if not self._running:
            return
        logger.info("Stopping Network Monitor Service")
        self._running = False
        self._shutdown_event.set()

        self.orchestrator.stop_scan()
        self.port_scanner.stop()
        await self.scheduler.stop()
        await self.latency.stop()

        for inventory in self.inventories:
            await inventory.close()
        await self.vendors.close()

        # Stop API server
        if self._api_runner:
            await self._api_runner.cleanup()
            self._api_runner = None

    async def _start_api_server(self) -> None:
        """Start API server."""
        self._api_app = self.build_api()
        self._api_runner = web.AppRunner(self._api_app)
        await self._api_runner.setup()
        site = web.TCPSite(self._api_runner, self.config.api_host, self.config.api_port)
        await site.start()
        logger.info(f"API server started on {self.config.api_host}:{self.config.api_port}")


def main():
    """Entry point for network-monitor service."""
    import argparse

    parser = argparse.ArgumentParser(description="Network Discovery & Monitoring Service")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--host", type=str, help="API host")
    parser.add_argument("--port", type=int, help="API port")
    parser.add_argument("--db", type=str, help="Database path")
    parser.add_argument("--log-level", type=str, help="Log level")
    args = parser.parse_args()

    # Load configuration
    if args.config:
        config = MonitorConfig.from_yaml(Path(args.config))
    else:
        config = MonitorConfig.from_env()

    # Override with CLI args
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.db:
        config.db_path = Path(args.db)
    if args.log_level:
        config.log_level = args.log_level

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Validate
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Create service
    service = NetworkMonitorService(config)

    # Handle signals
    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
