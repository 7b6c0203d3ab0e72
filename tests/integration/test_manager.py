"""
Integration tests for KnowledgeStateManager.

These tests run the full stack (SQLite stores, archiver, snapshotter, cache
and search coordinator) against a temporary database with a fake clock.
"""

import asyncio

import pytest

from kbstate import (
    ConcurrencyConflict,
    EntityRecord,
    KnowledgeStateManager,
    SearchOptions,
    ServerConfig,
    TimeRange,
    ValidationError,
)
from kbstate.config import (
    ArchiverConfig,
    CleanupConfig,
    ManagerConfig,
    SnapshotConfig,
    StorageConfig,
)
from kbstate.scheduler import MaintenanceScheduler


def make_product(entity_id, name="Epoxy 2K", description="Two component epoxy resin"):
    return EntityRecord(
        entity_id=entity_id,
        type="product",
        name=name,
        content={"description": description, "body": "structural adhesive " * 20},
        metadata={"category": "adhesives"},
    )


@pytest.fixture
def config(data_dir):
    return ServerConfig(storage=StorageConfig(data_dir=data_dir, wal_mode=False))


@pytest.fixture
def manager(config, clock):
    manager = KnowledgeStateManager(config, clock=clock)
    manager.db.initialize()
    return manager


class TestUpsert:
    """Write path through the manager."""

    @pytest.mark.asyncio
    async def test_versions_increase(self, manager):
        """Version equals the number of successful upserts."""
        for i in range(4):
            result = await manager.upsert_entity(make_product("P1", name=f"Epoxy v{i}"))

        assert result.version == 4
        entity = await manager.get_entity("P1")
        assert entity.version == 4
        assert entity.change_count == 4

    @pytest.mark.asyncio
    async def test_concurrent_same_entity(self, manager):
        """Concurrent upserts to one entity serialize to versions 1..N."""
        results = await asyncio.gather(
            *(manager.upsert_entity(make_product("P1", name=f"name {i}")) for i in range(6))
        )

        assert sorted(r.version for r in results) == [1, 2, 3, 4, 5, 6]
        history = await manager.get_entity_history("P1")
        assert [c.version for c in history] == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_concurrent_different_entities(self, manager):
        results = await asyncio.gather(
            *(manager.upsert_entity(make_product(f"P{i}")) for i in range(5))
        )

        assert all(r.version == 1 for r in results)
        assert len(await manager.list_entities()) == 5

    @pytest.mark.asyncio
    async def test_blank_id_rejected(self, manager):
        with pytest.raises(ValidationError):
            await manager.upsert_entity(make_product("  "))

    @pytest.mark.asyncio
    async def test_expected_version_conflict_not_retried(self, manager):
        """An explicit version check fails immediately."""
        await manager.upsert_entity(make_product("P1"))

        with pytest.raises(ConcurrencyConflict):
            await manager.upsert_entity(make_product("P1", name="stale"), expected_version=5)

        assert (await manager.get_entity("P1")).version == 1

    @pytest.mark.asyncio
    async def test_lost_version_race_is_retried(self, manager, monkeypatch):
        """A writer that loses the race re-reads and applies its change on top."""
        await manager.upsert_entity(make_product("P1", name="first"))

        store = manager.current_store
        real_get = store._get
        calls = []

        def stale_get(conn, entity_id):
            calls.append(entity_id)
            # The first read misses the row another writer already created
            return None if len(calls) == 1 else real_get(conn, entity_id)

        monkeypatch.setattr(store, "_get", stale_get)

        result = await manager.upsert_entity(make_product("P1", name="second"))

        assert result.version == 2
        assert (await manager.get_entity("P1")).name == "second"
        history = await manager.get_entity_history("P1")
        assert [c.version for c in history] == [1, 2]
        assert history[1].previous_state["name"] == "first"

    @pytest.mark.asyncio
    async def test_lost_compare_and_swap_is_retried(self, manager, monkeypatch):
        """A compare-and-swap that loses once succeeds on the retry without gaps."""
        await manager.upsert_entity(make_product("P1"))

        store = manager.current_store
        real_swap = store._compare_and_swap
        attempts = []

        def losing_once(conn, entity, expected_version):
            attempts.append(expected_version)
            if len(attempts) == 1:
                raise ConcurrencyConflict(entity.entity_id, expected_version, expected_version + 1)
            return real_swap(conn, entity, expected_version)

        monkeypatch.setattr(store, "_compare_and_swap", losing_once)

        result = await manager.upsert_entity(make_product("P1", name="Epoxy 2K Rapid"))

        assert attempts == [1, 1]
        assert result.version == 2
        assert [c.version for c in await manager.get_entity_history("P1")] == [1, 2]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, data_dir, clock, monkeypatch):
        """When every attempt loses, the conflict surfaces and nothing is written."""
        config = ServerConfig(
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
            manager=ManagerConfig(max_upsert_retries=2),
        )
        manager = KnowledgeStateManager(config, clock=clock)
        manager.db.initialize()
        await manager.upsert_entity(make_product("P1"))

        attempts = []

        def always_losing(conn, entity, expected_version):
            attempts.append(expected_version)
            raise ConcurrencyConflict(entity.entity_id, expected_version, expected_version + 1)

        monkeypatch.setattr(manager.current_store, "_compare_and_swap", always_losing)

        with pytest.raises(ConcurrencyConflict):
            await manager.upsert_entity(make_product("P1", name="never stored"))

        assert len(attempts) == 3
        entity = await manager.get_entity("P1")
        assert entity.version == 1
        assert entity.name == "Epoxy 2K"
        assert len(await manager.get_entity_history("P1")) == 1

    @pytest.mark.asyncio
    async def test_unknown_entity(self, manager):
        assert await manager.get_entity("missing") is None
        assert await manager.get_entity_history("missing") == []


class TestSearch:
    """Read path and cache behaviour."""

    @pytest.mark.asyncio
    async def test_recent_history_search(self, manager, clock):
        """Only changes inside the time window are returned."""
        await manager.upsert_entity(make_product("OLD", name="Epoxy Legacy"))
        clock.advance(days=10)
        await manager.upsert_entity(make_product("P1", name="Epoxy Fast"))
        clock.advance(days=1)
        await manager.upsert_entity(make_product("P1", name="Epoxy Fast Cure"))
        await manager.upsert_entity(make_product("F1", name="Foam", description="PU foam"))

        result = await manager.search(
            "epoxy",
            SearchOptions(
                include_history=True,
                time_range=TimeRange.last_days(7, now=clock.now),
            ),
        )

        assert {m.entity.entity_id for m in result.current_matches} == {"OLD", "P1"}
        assert [(m.change.entity_id, m.change.version) for m in result.history_matches] == [
            ("P1", 1),
            ("P1", 2),
        ]

    @pytest.mark.asyncio
    async def test_upsert_invalidates_cached_result(self, manager):
        """A new matching entity is visible right after the upsert."""
        empty = await manager.search("silicone")
        assert empty.total_count == 0

        await manager.upsert_entity(
            make_product("S1", name="Silicone Sealant", description="Neutral cure")
        )
        result = await manager.search("silicone")

        assert result.cached is False
        assert [m.entity.entity_id for m in result.current_matches] == ["S1"]

    @pytest.mark.asyncio
    async def test_update_invalidates_referencing_entry(self, manager):
        await manager.upsert_entity(make_product("P1", name="Epoxy 2K"))
        first = await manager.search("epoxy")
        assert (await manager.search("epoxy")).cached is True

        await manager.upsert_entity(make_product("P1", name="Epoxy 2K Rapid"))
        result = await manager.search("epoxy")

        assert result.cached is False
        assert result.current_matches[0].entity.name == "Epoxy 2K Rapid"
        assert first.current_matches[0].entity.name == "Epoxy 2K"

    @pytest.mark.asyncio
    async def test_new_change_invalidates_history_result(self, manager):
        """A change that history search would now match evicts the cached result."""
        await manager.upsert_entity(
            EntityRecord(entity_id="A", type="product", name="Primer", relationships=["X9"])
        )
        await manager.upsert_entity(EntityRecord(entity_id="B", type="product", name="Sealer"))
        options = SearchOptions(include_history=True)

        first = await manager.search("X9", options)
        assert [m.change.entity_id for m in first.history_matches] == ["A"]
        assert (await manager.search("X9", options)).cached is True

        await manager.upsert_entity(
            EntityRecord(entity_id="B", type="product", name="Sealer", relationships=["X9"])
        )
        result = await manager.search("X9", options)

        assert result.cached is False
        assert [m.change.entity_id for m in result.history_matches] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_archival_invalidates_history_result(self, manager, clock):
        """Records moved to the archive no longer appear in cached history results."""
        await manager.upsert_entity(make_product("P1", name="Epoxy Classic"))
        history_only = SearchOptions(include_history=True)

        assert len((await manager.search("epoxy", history_only)).history_matches) == 1
        assert (await manager.search("epoxy", history_only)).cached is True

        clock.advance(days=31)
        result = await manager.trigger_archival()
        assert result.archived == 1

        after = await manager.search("epoxy", history_only)
        assert after.cached is False
        assert after.history_matches == []

        with_archive = await manager.search(
            "epoxy", SearchOptions(include_history=True, include_long_term=True)
        )
        assert [m.change.entity_id for m in with_archive.archive_matches] == ["P1"]

    @pytest.mark.asyncio
    async def test_search_across_all_tiers(self, manager, clock):
        await manager.upsert_entity(make_product("P1", name="Epoxy Classic"))
        clock.advance(days=31)
        await manager.trigger_archival()
        await manager.upsert_entity(make_product("P2", name="Epoxy Rapid"))

        result = await manager.search(
            "epoxy", SearchOptions(include_history=True, include_long_term=True)
        )

        assert len(result.current_matches) == 2
        assert [m.change.entity_id for m in result.history_matches] == ["P2"]
        assert [m.change.entity_id for m in result.archive_matches] == ["P1"]
        assert result.total_count == 4


class TestHistoryAndArchival:
    """History spanning the change log and the archive."""

    @pytest.mark.asyncio
    async def test_archival_keeps_history(self, manager, clock):
        """History is identical before and after archival."""
        for i in range(3):
            clock.advance(ms=1000)
            await manager.upsert_entity(make_product("P1", name=f"Epoxy v{i}"))
        before = await manager.get_entity_history("P1")

        clock.advance(days=31)
        result = await manager.trigger_archival()

        assert result.archived == 3
        stats = await manager.get_statistics()
        assert stats["short_term"]["count"] == 0
        assert stats["long_term"]["count"] == 1
        assert stats["long_term"]["total_compressed_bytes"] < stats["long_term"][
            "total_original_bytes"
        ]
        assert await manager.get_entity_history("P1") == before

    @pytest.mark.asyncio
    async def test_history_across_tiers_with_range(self, manager, clock):
        """History merges both tiers and honours the time range."""
        first = await manager.upsert_entity(make_product("P1", name="v1"))
        clock.advance(days=40)
        await manager.trigger_archival()
        second = await manager.upsert_entity(make_product("P1", name="v2"))

        full = await manager.get_entity_history("P1")
        assert [c.change_id for c in full] == [first.change.change_id, second.change.change_id]

        recent = await manager.get_entity_history(
            "P1", TimeRange.last_days(7, now=clock.now)
        )
        assert [c.version for c in recent] == [2]


class TestAdministration:
    """Statistics, snapshots and retention cleanup."""

    @pytest.mark.asyncio
    async def test_statistics(self, manager, clock):
        await manager.upsert_entity(make_product("P1"))
        await manager.upsert_entity(make_product("P2"))

        stats = await manager.get_statistics()

        assert stats["timestamp"] == clock.now
        assert stats["current"] == {"count": 2, "last_modified": clock.now}
        assert stats["short_term"]["count"] == 2
        assert stats["short_term"]["overdue"] == 0
        assert stats["long_term"]["count"] == 0
        assert stats["snapshots"]["count"] == 0
        for key in ("cache", "archiver", "snapshotter", "search"):
            assert key in stats

    @pytest.mark.asyncio
    async def test_overdue_reported_not_deleted(self, manager, clock):
        """Records past short-term retention are counted, never dropped."""
        await manager.upsert_entity(make_product("P1"))
        clock.advance(days=91)

        stats = await manager.get_statistics()

        assert stats["short_term"]["overdue"] == 1
        assert stats["short_term"]["count"] == 1

    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, manager):
        await manager.upsert_entity(make_product("P1"))
        expected = await manager.get_entity("P1")

        info = await manager.create_snapshot(description="before import")
        await manager.upsert_entity(make_product("P1", name="changed"))

        assert info.type == "manual"
        assert await manager.load_snapshot(info.snapshot_id) == [expected]
        assert [s.snapshot_id for s in await manager.list_snapshots()] == [info.snapshot_id]
        assert await manager.delete_snapshot(info.snapshot_id) is True
        assert await manager.get_snapshot(info.snapshot_id) is None

    @pytest.mark.asyncio
    async def test_cleanup(self, manager, clock):
        """Cleanup archives, then purges data past retention."""
        await manager.upsert_entity(make_product("P1"))
        scheduled = await manager.create_snapshot("scheduled")
        manual = await manager.create_snapshot("manual")
        clock.advance(days=91)

        first = await manager.trigger_cleanup()
        assert first.archived == 1
        assert first.overdue_changes == 0
        assert first.purged_archives == 0
        assert first.purged_snapshots == 0

        clock.advance(days=700)
        second = await manager.trigger_cleanup()

        assert second.archived == 0
        assert second.purged_archives == 1
        assert second.purged_snapshots == 1
        remaining = [s.snapshot_id for s in await manager.list_snapshots()]
        assert remaining == [manual.snapshot_id]
        assert scheduled.snapshot_id not in remaining
        assert await manager.get_entity("P1") is not None

    @pytest.mark.asyncio
    async def test_invalidate_cache(self, manager):
        await manager.upsert_entity(make_product("P1"))
        await manager.search("epoxy")

        assert manager.invalidate_cache() == 1
        assert (await manager.search("epoxy")).cached is False


class TestMaintenanceScheduler:
    """Background job lifecycle."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, data_dir, clock):
        config = ServerConfig(
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
            archiver=ArchiverConfig(interval_seconds=3600),
            snapshot=SnapshotConfig(interval_seconds=3600),
            cleanup=CleanupConfig(enabled=False),
        )
        manager = KnowledgeStateManager(config, clock=clock)
        await manager.initialize()
        await manager.upsert_entity(make_product("P1"))

        scheduler = MaintenanceScheduler(manager)
        scheduler.start()
        assert scheduler.running is True
        assert scheduler.stats["tasks"] == 2

        for _ in range(200):
            if manager.snapshotter.stats["snapshot_count"] and manager.archiver.stats["runs"]:
                break
            await asyncio.sleep(0.01)

        await scheduler.stop()
        await manager.close()

        assert scheduler.running is False
        assert scheduler.stats["tasks"] == 0
        assert manager.archiver.stats["runs"] >= 1
        snapshots = await manager.list_snapshots("scheduled")
        assert len(snapshots) == 1

    @pytest.mark.asyncio
    async def test_disabled_jobs_not_started(self, data_dir, clock):
        config = ServerConfig(
            storage=StorageConfig(data_dir=data_dir, wal_mode=False),
            archiver=ArchiverConfig(enabled=False),
            snapshot=SnapshotConfig(enabled=False),
            cleanup=CleanupConfig(enabled=False),
        )
        manager = KnowledgeStateManager(config, clock=clock)
        await manager.initialize()

        scheduler = MaintenanceScheduler(manager)
        scheduler.start()
        assert scheduler.stats["tasks"] == 0

        await scheduler.stop()
        assert scheduler.running is False
