"""
Change-log archiver.

The Archiver moves aged change records from the short-term change log into
the long-term archive. This provides:
- Bounded size of the short-term log
- Compressed long-term history for audit and search
- Lossless reconstruction of every entity's history

Algorithm (one pass):
    1. cutoff = now - compression_threshold_days
    2. Select (entity_id, UTC day) groups with records older than cutoff
    3. Per group, in one transaction: load the records, serialize and
       compress them, insert one archive row, delete exactly those records
    4. Repeat with the next batch until nothing is eligible or stop()

Invariants:
    - The archive insert precedes the change-log delete, in one transaction
    - A change record is either in the log or in exactly one archive row
    - A failed group is left in the log and retried on the next pass
    - Re-running is safe: selection is by age over whatever remains

How to change safely:
    - Never widen the delete beyond the ids loaded for the group
    - Payload format changes require a version field
    - Test re-runs after injected failures before changing grouping
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from ..codec import CompressionCodec
from ..errors import ArchivalGroupError
from ..state.change_log import ChangeGroup, ChangeLog
from ..state.models import DAY_MS, Clock, now_ms
from ..storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class ArchivalResult:
    """Outcome of one archival pass.

    Attributes:
        archived: Change records written to the archive
        deleted: Change records removed from the log
        groups: Archive rows written
        failed_groups: Groups that failed and stay in the log
    """

    archived: int = 0
    deleted: int = 0
    groups: int = 0
    failed_groups: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "archived": self.archived,
            "deleted": self.deleted,
            "groups": self.groups,
            "failed_groups": self.failed_groups,
        }


class Archiver:
    """Archives aged change records into compressed per-day bundles.

    The Archiver runs as a background loop that calls run_once() every
    interval_seconds. run_once() can also be triggered directly.

    Attributes:
        db: Shared state database
        change_log: Source of change records
        compression_threshold_days: Age before a record is archived

    Example:
        >>> archiver = Archiver(db, change_log, compression_threshold_days=30)
        >>> result = await archiver.run_once()
        >>> print(result.archived, result.deleted)
    """

    def __init__(
        self,
        db: Database,
        change_log: ChangeLog,
        clock: Clock = now_ms,
        compression_threshold_days: int = 30,
        batch_size: int = 100,
        interval_seconds: int = 86400,
        compression: str = "gzip",
        on_archived: Callable[[ArchivalResult], None] | None = None,
    ) -> None:
        """Initialize the archiver.

        Args:
            db: Shared state database
            change_log: Change log to archive from
            clock: Time source (Unix ms)
            compression_threshold_days: Age before archival
            batch_size: Maximum groups selected per batch
            interval_seconds: Interval between background passes
            compression: Compression algorithm ("gzip" or "none")
            on_archived: Called after a pass that moved records out of the log
        """
        self.db = db
        self.change_log = change_log
        self.clock = clock
        self.compression_threshold_days = compression_threshold_days
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.codec = CompressionCodec(compression)
        self.on_archived = on_archived

        self._running = False
        self._stop_generation = 0
        self._pass_lock = asyncio.Lock()
        self._runs = 0
        self._archived_count = 0
        self._failed_count = 0
        self._last_run_at: int | None = None

    async def start(self) -> None:
        """Start the archiver loop."""
        if self._running:
            logger.warning("Archiver already running")
            return

        self._running = True
        logger.info(
            "Starting archiver",
            extra={
                "interval_seconds": self.interval_seconds,
                "compression_threshold_days": self.compression_threshold_days,
            },
        )

        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error(f"Archival pass failed: {e}", exc_info=True)
                await asyncio.sleep(self.interval_seconds)

        except asyncio.CancelledError:
            logger.info("Archiver cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop after the in-flight group."""
        self._running = False
        self._stop_generation += 1
        logger.info("Stopping archiver")

    async def run_once(self) -> ArchivalResult:
        """Archive every eligible group.

        Returns:
            ArchivalResult with counts for this pass
        """
        # A stop() issued from here on, including while waiting for the lock,
        # ends this pass
        generation = self._stop_generation

        async with self._pass_lock:
            result = ArchivalResult()
            cutoff = self.clock() - self.compression_threshold_days * DAY_MS
            failed: set[tuple[str, str]] = set()

            while self._stop_generation == generation:
                candidates = self.change_log.list_archivable_groups(
                    cutoff, self.batch_size + len(failed)
                )
                groups = [g for g in candidates if (g.entity_id, g.day) not in failed]
                if not groups:
                    break

                for group in groups:
                    if self._stop_generation != generation:
                        break

                    try:
                        archived, deleted = self._archive_group(group, cutoff)
                    except ArchivalGroupError as e:
                        logger.error(str(e), exc_info=True)
                        failed.add((group.entity_id, group.day))
                        result.failed_groups += 1
                        continue

                    if archived:
                        result.archived += archived
                        result.deleted += deleted
                        result.groups += 1

                    # Let request handling run between groups
                    await asyncio.sleep(0)

            self._runs += 1
            self._archived_count += result.archived
            self._failed_count += result.failed_groups
            self._last_run_at = self.clock()

        if result.archived and self.on_archived is not None:
            self.on_archived(result)

        logger.info(
            "Archival pass completed",
            extra={**result.to_dict(), "cutoff": cutoff},
        )
        return result

    def _archive_group(self, group: ChangeGroup, cutoff: int) -> tuple[int, int]:
        """Archive one (entity, day) group.

        Returns:
            (records archived, records deleted)

        Raises:
            ArchivalGroupError: If any step fails; nothing is committed
        """
        day_start = _day_start_ms(group.day)

        try:
            with self.db.transaction() as conn:
                records = self.change_log.fetch_group(conn, group, day_start, cutoff)
                if not records:
                    return 0, 0

                payload = {
                    "entity_id": group.entity_id,
                    "date": group.day,
                    "change_count": len(records),
                    "changes": [r.to_dict() for r in records],
                    "states": [r.new_state for r in records],
                }
                encoded = self.codec.compress_payload(payload)
                change_ids = [r.change_id for r in records]

                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO long_term_archive
                    (entity_id, period_day, period_start, period_end, compressed_payload,
                     compression, compression_ratio, change_count, first_change_id,
                     last_change_id, original_size, compressed_size, archived_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        group.entity_id,
                        group.day,
                        min(r.timestamp for r in records),
                        max(r.timestamp for r in records),
                        encoded.data,
                        encoded.algorithm,
                        encoded.ratio,
                        len(records),
                        min(change_ids),
                        max(change_ids),
                        encoded.original_size,
                        encoded.compressed_size,
                        self.clock(),
                    ),
                )
                if cursor.rowcount == 0:
                    raise ArchivalGroupError(
                        group.entity_id,
                        group.day,
                        f"archive row starting at change {min(change_ids)} already exists",
                    )

                # Only after the archive row is in place
                deleted = self.change_log.delete_changes(conn, change_ids)
                if deleted != len(change_ids):
                    raise ArchivalGroupError(
                        group.entity_id,
                        group.day,
                        f"deleted {deleted} of {len(change_ids)} change records",
                    )

        except ArchivalGroupError:
            raise
        except Exception as e:
            raise ArchivalGroupError(group.entity_id, group.day, str(e)) from e

        logger.info(
            f"Archived {len(records)} changes for entity {group.entity_id} on {group.day}",
            extra={
                "entity_id": group.entity_id,
                "day": group.day,
                "changes": len(records),
                "compression_ratio": round(encoded.ratio, 4),
            },
        )
        return len(records), deleted

    @property
    def stats(self) -> dict[str, Any]:
        """Get archiver statistics."""
        return {
            "running": self._running,
            "runs": self._runs,
            "archived_count": self._archived_count,
            "failed_groups": self._failed_count,
            "last_run_at": self._last_run_at,
        }


def _day_start_ms(day: str) -> int:
    start = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return int(start.timestamp() * 1000)
