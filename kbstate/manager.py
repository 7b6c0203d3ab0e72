"""
Knowledge state manager.

The manager is the composition root and the only interface external
collaborators use. It is constructed once at process start and passed to
callers; there is no module-level instance.

    upsert_entity ──> CurrentStateStore + ChangeLog (one transaction)
                 └──> QueryCache.invalidate_for_entity (after commit)
    search ─────────> TieredSearchCoordinator ──> cache / state / log / archive
    trigger_* ──────> Archiver / Snapshotter / retention cleanup

Invariants:
    - Upserts to the same entity serialize on a per-entity lock
    - Upserts to different entities never share a lock
    - Cache entries touching an entity are gone before upsert_entity returns
    - Cached history results are dropped after every archival pass that
      moved records
    - Change-log records are never deleted unless archived

How to change safely:
    - New operations go through the component that owns the table
    - Keep cache invalidation after the commit, never before
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any

from .archive import ArchivalResult, Archiver, LongTermArchive
from .cache import QueryCache
from .config import ServerConfig
from .errors import ConcurrencyConflict, ValidationError
from .search import SearchOptions, SearchResult, TieredSearchCoordinator, change_text
from .snapshot import MANUAL_SNAPSHOT, SnapshotInfo, Snapshotter
from .state import ChangeLog, ChangeRecord, CurrentStateStore, EntityRecord, TimeRange, UpsertResult
from .state.models import DAY_MS, Clock, now_ms
from .storage import Database

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Outcome of a retention cleanup.

    Attributes:
        archived: Change records archived by the leading archival pass
        purged_archives: Archive records past long-term retention
        purged_snapshots: Non-manual snapshots past snapshot retention
        purged_cache_entries: Expired cache entries swept
        overdue_changes: Unarchived change records past short-term retention
    """

    archived: int = 0
    purged_archives: int = 0
    purged_snapshots: int = 0
    purged_cache_entries: int = 0
    overdue_changes: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "archived": self.archived,
            "purged_archives": self.purged_archives,
            "purged_snapshots": self.purged_snapshots,
            "purged_cache_entries": self.purged_cache_entries,
            "overdue_changes": self.overdue_changes,
        }


class KnowledgeStateManager:
    """Tiered knowledge state store.

    Example:
        >>> manager = KnowledgeStateManager(config)
        >>> await manager.initialize()
        >>> result = await manager.upsert_entity(EntityRecord("P1", "product", name="Epoxy"))
        >>> found = await manager.search("epoxy", SearchOptions(include_history=True))
        >>> await manager.close()
    """

    def __init__(self, config: ServerConfig | None = None, clock: Clock = now_ms) -> None:
        """Wire up all components.

        Args:
            config: Server configuration (defaults if not provided)
            clock: Time source (Unix ms) shared by every component
        """
        self.config = config or ServerConfig()
        self.clock = clock

        storage = self.config.storage
        self.db = Database(
            data_dir=storage.data_dir,
            db_filename=storage.db_filename,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            cache_size_pages=storage.cache_size_pages,
        )

        self.change_log = ChangeLog(
            self.db, clock=clock, page_size=self.config.manager.history_page_size
        )
        self.current_store = CurrentStateStore(self.db, self.change_log)
        self.archive = LongTermArchive(self.db)

        self.archiver = Archiver(
            self.db,
            self.change_log,
            clock=clock,
            compression_threshold_days=self.config.retention.compression_threshold_days,
            batch_size=self.config.archiver.batch_size,
            interval_seconds=self.config.archiver.interval_seconds,
            compression=self.config.archiver.compression,
            on_archived=self._on_archived,
        )
        self.snapshotter = Snapshotter(
            self.db,
            self.current_store,
            clock=clock,
            interval_seconds=self.config.snapshot.interval_seconds,
            batch_size=self.config.snapshot.batch_size,
            compression=self.config.snapshot.compression,
        )

        self.cache = QueryCache(
            ttl_seconds=self.config.cache.ttl_seconds,
            max_entries=self.config.cache.max_entries,
            clock=clock,
        )
        self.search_coordinator = TieredSearchCoordinator(
            self.current_store, self.change_log, self.archive, self.cache
        )

        self._entity_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._initialized = False

    async def initialize(self) -> None:
        """Create the data directory and schema.

        Raises:
            StoreInitializationError: If the stores cannot be created
        """
        if self._initialized:
            return
        self.db.initialize()
        self._initialized = True
        logger.info("Knowledge state manager initialized", extra={"db_path": str(self.db.db_path)})

    async def close(self) -> None:
        """Stop background jobs started through this manager."""
        await self.archiver.stop()
        await self.snapshotter.stop()
        self._initialized = False
        logger.info("Knowledge state manager closed")

    def _on_archived(self, result: ArchivalResult) -> None:
        # History results may list records that now live in the archive
        self.cache.invalidate_history()

    def _lock_for(self, entity_id: str) -> asyncio.Lock:
        lock = self._entity_locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._entity_locks[entity_id] = lock
        return lock

    # =========================================================================
    # Writes
    # =========================================================================

    async def upsert_entity(
        self,
        entity: EntityRecord,
        expected_version: int | None = None,
    ) -> UpsertResult:
        """Create or replace an entity.

        A lost version race without expected_version is retried as a fresh
        read-modify-write up to max_upsert_retries times.

        Args:
            entity: Complete entity record from the ingestion layer
            expected_version: Optional optimistic-concurrency check

        Returns:
            UpsertResult with the stored entity, version and change summary

        Raises:
            ValidationError: If the entity is invalid
            ConcurrencyConflict: If the version check fails or retries run out
        """
        entity_id = (entity.entity_id or "").strip()
        if not entity_id:
            raise ValidationError("entity_id is required", field_name="entity_id")

        lock = self._lock_for(entity_id)
        async with lock:
            attempt = 0
            while True:
                try:
                    result = await self.current_store.upsert(entity, expected_version)
                    break
                except ConcurrencyConflict as e:
                    if (
                        expected_version is not None
                        or attempt >= self.config.manager.max_upsert_retries
                    ):
                        raise
                    attempt += 1
                    logger.warning(
                        f"Retrying upsert after version conflict: {e}",
                        extra={"entity_id": entity_id, "attempt": attempt},
                    )
                    await asyncio.sleep(0)

            self.cache.invalidate_for_entity(
                entity_id,
                search_text=_searchable_text(result.entity),
                change_text=change_text(result.change),
            )

        return result

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_entity(self, entity_id: str) -> EntityRecord | None:
        """Current record of an entity, or None if it does not exist."""
        return await self.current_store.get_entity(entity_id)

    async def list_entities(
        self,
        entity_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EntityRecord]:
        return await self.current_store.list_entities(entity_type, limit=limit, offset=offset)

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchResult:
        """Tiered search. See TieredSearchCoordinator.search."""
        return await self.search_coordinator.search(query, options)

    async def get_entity_history(
        self,
        entity_id: str,
        time_range: TimeRange | None = None,
    ) -> list[ChangeRecord]:
        """Full change history of an entity across the log and the archive.

        Returns:
            Change records ordered by change_id, without duplicates
        """
        # Log before archive: a record archived in between shows up twice
        # and is de-duplicated, instead of being missed
        merged: dict[int, ChangeRecord] = {}
        for change in await self.change_log.get_changes(entity_id, time_range):
            merged[change.change_id] = change

        for archive in await self.archive.list_archives(entity_id=entity_id, time_range=time_range):
            for change in archive.changes():
                if time_range is not None and not time_range.contains(change.timestamp):
                    continue
                merged.setdefault(change.change_id, change)

        return [merged[change_id] for change_id in sorted(merged)]

    async def get_statistics(self) -> dict[str, Any]:
        """Counts and sizes of every tier plus background job stats."""
        now = self.clock()
        overdue = await self._count_overdue(now)

        long_term = await self.archive.get_stats()
        snapshots = await self.snapshotter.get_stats()

        return {
            "timestamp": now,
            "current": {
                "count": await self.current_store.count(),
                "last_modified": await self.current_store.last_modified(),
            },
            "short_term": {
                "count": await self.change_log.count(),
                "oldest": await self.change_log.oldest_timestamp(),
                "newest": await self.change_log.newest_timestamp(),
                "overdue": overdue,
            },
            "long_term": long_term,
            "snapshots": snapshots,
            "cache": self.cache.stats(),
            "archiver": self.archiver.stats,
            "snapshotter": self.snapshotter.stats,
            "search": self.search_coordinator.stats,
        }

    async def _count_overdue(self, now: int) -> int:
        cutoff = now - self.config.retention.short_term_retention_days * DAY_MS
        overdue = await self.change_log.count_older_than(cutoff)
        if overdue:
            logger.warning(
                f"{overdue} change records are past short-term retention and not yet archived",
                extra={"overdue": overdue, "cutoff": cutoff},
            )
        return overdue

    # =========================================================================
    # Administrative
    # =========================================================================

    async def create_snapshot(
        self,
        snapshot_type: str = MANUAL_SNAPSHOT,
        description: str | None = None,
    ) -> SnapshotInfo:
        return await self.snapshotter.create_snapshot(snapshot_type, description)

    async def get_snapshot(self, snapshot_id: str) -> SnapshotInfo | None:
        return await self.snapshotter.get_snapshot(snapshot_id)

    async def list_snapshots(self, snapshot_type: str | None = None) -> list[SnapshotInfo]:
        return await self.snapshotter.list_snapshots(snapshot_type)

    async def load_snapshot(self, snapshot_id: str) -> list[EntityRecord] | None:
        return await self.snapshotter.load_snapshot(snapshot_id)

    async def delete_snapshot(self, snapshot_id: str) -> bool:
        return await self.snapshotter.delete_snapshot(snapshot_id)

    async def trigger_archival(self) -> ArchivalResult:
        """Run one archival pass now."""
        return await self.archiver.run_once()

    async def trigger_cleanup(self) -> CleanupResult:
        """Archive, then purge everything past its retention window.

        Unarchived change records are never purged; past short-term
        retention they are only reported as overdue.
        """
        archival = await self.archiver.run_once()
        now = self.clock()

        purged_archives = await self.archive.purge_older_than(
            now - self.config.retention.long_term_retention_days * DAY_MS
        )
        purged_snapshots = await self.snapshotter.purge_older_than(
            self.config.retention.snapshot_retention_days
        )
        if purged_archives:
            # Cached long-term results may reference purged records
            self.cache.invalidate_all()

        result = CleanupResult(
            archived=archival.archived,
            purged_archives=purged_archives,
            purged_snapshots=purged_snapshots,
            purged_cache_entries=self.cache.sweep(),
            overdue_changes=await self._count_overdue(now),
        )

        logger.info("Cleanup completed", extra=result.to_dict())
        return result

    def invalidate_cache(self) -> int:
        """Drop every cached query result."""
        return self.cache.invalidate_all()


def _searchable_text(entity: EntityRecord) -> str:
    return " ".join([entity.entity_id, entity.type.value, entity.name, entity.search_text()])
