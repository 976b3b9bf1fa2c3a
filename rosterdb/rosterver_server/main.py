"""
Roster Server - Main entry point.

This module opens the roster store and keeps the retention sweeper
running:
- Schema bootstrap and startup sweep (RosterStore.initialize)
- Periodic sweeps (SweeperService) when ROSTER_SWEEP_INTERVAL_SECONDS > 0

Usage:
    python -m rosterdb.rosterver_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - A store without a configured database never starts
    - Sweep failures are logged and never stop the service
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .config import StoreSettings
from .errors import NotConfiguredError, RosterStoreError
from .storage import RosterStore, SweeperService

logger = logging.getLogger(__name__)


def setup_logging(settings: StoreSettings) -> None:
    """Configure logging based on configuration.

    Args:
        settings: Store settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class RosterService:
    """Roster store lifecycle.

    Attributes:
        settings: Store settings
        store: The roster store (created in start())
        sweeper: Periodic sweeper, if an interval is configured

    Example:
        >>> service = RosterService(settings)
        >>> await service.start()
        >>> # Running until request_shutdown()
        >>> await service.stop()
    """

    def __init__(self, settings: StoreSettings) -> None:
        self.settings = settings
        self.store: RosterStore | None = None
        self.sweeper: SweeperService | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Open the store and run until shutdown is requested."""
        if self._running:
            logger.warning("Roster service already running")
            return

        logger.info("Starting roster service")
        self.settings.log_config()

        try:
            self.store = RosterStore(self.settings)
            await asyncio.to_thread(self.store.initialize)

            if self.settings.sweep_interval_seconds > 0:
                self.sweeper = SweeperService(self.store, self.settings.sweep_interval_seconds)
                self._tasks.append(asyncio.create_task(self.sweeper.start()))

            self._running = True
            logger.info("Roster service started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Roster service startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if self.sweeper:
            await self.sweeper.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._running:
            self._running = False
            logger.info("Roster service stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    settings = StoreSettings()
    try:
        settings.validate_settings()
    except (NotConfiguredError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(settings)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    service = RosterService(settings)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        pass
    except RosterStoreError as e:
        print(f"Roster store error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
