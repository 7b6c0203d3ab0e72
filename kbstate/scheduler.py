"""
Background maintenance scheduler.

Runs the maintenance jobs as independent asyncio tasks, decoupled from
request handling:

    archival    every KB_ARCHIVER_INTERVAL_SECONDS  (default daily)
    snapshot    every KB_SNAPSHOT_INTERVAL_SECONDS  (default daily, type "scheduled")
    cleanup     every KB_CLEANUP_INTERVAL_SECONDS   (default weekly)

Jobs coordinate only through the stores. A failing pass is logged and the
loop keeps going.

How to change safely:
    - New jobs need an enable flag and must tolerate cancellation while
      sleeping
    - stop() must let in-flight units finish before cancelling
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import ServerConfig
from .manager import KnowledgeStateManager

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Owns the archival, snapshot and cleanup loops.

    Example:
        >>> scheduler = MaintenanceScheduler(manager, config)
        >>> scheduler.start()
        >>> ...
        >>> await scheduler.stop()
    """

    def __init__(self, manager: KnowledgeStateManager, config: ServerConfig | None = None) -> None:
        self.manager = manager
        self.config = config or manager.config

        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._cleanup_runs = 0
        self._last_cleanup: dict[str, int] | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start all enabled loops. Must be called from a running event loop."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True

        if self.config.archiver.enabled:
            self._tasks.append(asyncio.create_task(self.manager.archiver.start()))

        if self.config.snapshot.enabled:
            self._tasks.append(asyncio.create_task(self.manager.snapshotter.start()))

        if self.config.cleanup.enabled:
            self._tasks.append(asyncio.create_task(self._cleanup_loop()))

        logger.info(
            "Maintenance scheduler started",
            extra={
                "archiver_enabled": self.config.archiver.enabled,
                "snapshot_enabled": self.config.snapshot.enabled,
                "cleanup_enabled": self.config.cleanup.enabled,
            },
        )

    async def _cleanup_loop(self) -> None:
        interval = self.config.cleanup.interval_seconds
        logger.info("Starting cleanup loop", extra={"interval_seconds": interval})

        try:
            while self._running:
                await asyncio.sleep(interval)
                if not self._running:
                    break
                try:
                    result = await self.manager.trigger_cleanup()
                    self._cleanup_runs += 1
                    self._last_cleanup = result.to_dict()
                except Exception as e:
                    logger.error(f"Scheduled cleanup failed: {e}", exc_info=True)

        except asyncio.CancelledError:
            logger.info("Cleanup loop cancelled")

    async def stop(self) -> None:
        """Ask jobs to finish their in-flight unit, then cancel the loops."""
        if not self._running:
            return

        logger.info("Stopping maintenance scheduler")
        self._running = False

        # Stop taking new groups/batches before cancelling sleeping loops
        await self.manager.archiver.stop()
        await self.manager.snapshotter.stop()

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        logger.info("Maintenance scheduler stopped")

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "tasks": len(self._tasks),
            "cleanup_runs": self._cleanup_runs,
            "last_cleanup": self._last_cleanup,
        }
