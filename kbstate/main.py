"""
Knowledge state server - Main entry point.

This module starts the knowledge state process with all components:
- KnowledgeStateManager (stores, cache, search)
- Maintenance scheduler (archival, snapshots, cleanup)

Inbound traffic (ingestion, queries) reaches the manager through the
embedding application; this process owns the stores and the background
jobs.

Usage:
    kbstate-server
    python -m kbstate.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Stores are initialized before any background job starts
    - Graceful shutdown lets in-flight archive groups finish
    - Only a startup failure terminates the process

How to change safely:
    - Add new components with enable/disable flags
    - Test the shutdown sequence when adding background jobs
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .config import ServerConfig
from .errors import StoreInitializationError
from .manager import KnowledgeStateManager
from .scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class Server:
    """Knowledge state server orchestrator.

    Manages the lifecycle of the manager and the maintenance scheduler.

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.manager: KnowledgeStateManager | None = None
        self.scheduler: MaintenanceScheduler | None = None

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting knowledge state server")
        self.config.log_config()

        try:
            self.manager = KnowledgeStateManager(self.config)
            await self.manager.initialize()

            self.scheduler = MaintenanceScheduler(self.manager, self.config)
            self.scheduler.start()

            self._running = True
            logger.info("Knowledge state server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping knowledge state server")

        if self.scheduler:
            await self.scheduler.stop()

        if self.manager:
            await self.manager.close()

        self._running = False
        logger.info("Knowledge state server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    exit_code = 0
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    except StoreInitializationError as e:
        print(f"Startup error: {e}", file=sys.stderr)
        exit_code = 1
    finally:
        loop.run_until_complete(server.stop())
        loop.close()

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
