"""
Unit tests for the tiered search coordinator.

Tests cover:
- Current-state only vs history and long-term tiers
- Time-range filtering of history and archive matches
- Cache hits and invalidation races
- Skipping unreadable archive records
- Input validation
"""

import pytest

from kbstate.archive import Archiver, LongTermArchive
from kbstate.cache import QueryCache
from kbstate.codec import CompressionCodec
from kbstate.errors import ValidationError
from kbstate.search import SearchOptions, TieredSearchCoordinator, extract_snippets
from kbstate.state import ChangeLog, CurrentStateStore, EntityRecord, TimeRange
from kbstate.storage import Database


def make_product(entity_id, name, description="Two component epoxy resin"):
    return EntityRecord(
        entity_id=entity_id,
        type="product",
        name=name,
        content={"description": description},
    )


class TestTieredSearchCoordinator:
    """Tests for TieredSearchCoordinator."""

    @pytest.fixture
    def db(self, data_dir):
        db = Database(data_dir, wal_mode=False)
        db.initialize()
        return db

    @pytest.fixture
    def change_log(self, db, clock):
        return ChangeLog(db, clock=clock)

    @pytest.fixture
    def store(self, db, change_log):
        return CurrentStateStore(db, change_log)

    @pytest.fixture
    def archive(self, db):
        return LongTermArchive(db)

    @pytest.fixture
    def archiver(self, db, change_log, clock):
        return Archiver(db, change_log, clock=clock, compression_threshold_days=30)

    @pytest.fixture
    def cache(self, clock):
        return QueryCache(ttl_seconds=3600, clock=clock)

    @pytest.fixture
    def coordinator(self, store, change_log, archive, cache):
        return TieredSearchCoordinator(store, change_log, archive, cache)

    @pytest.mark.asyncio
    async def test_current_state_only_by_default(self, coordinator, store):
        """Default options search only the current state."""
        await store.upsert(make_product("P1", "Epoxy 2K"))
        await store.upsert(make_product("P2", "Foam", "Expanding foam"))

        result = await coordinator.search("epoxy")

        assert [m.entity.entity_id for m in result.current_matches] == ["P1"]
        assert result.history_matches == []
        assert result.archive_matches == []
        assert result.total_count == 1
        assert result.cached is False

    @pytest.mark.asyncio
    async def test_history_within_time_range(self, coordinator, store, clock):
        """History matches are limited to the time range."""
        await store.upsert(make_product("P1", "Epoxy 2K"))
        clock.advance(days=10)
        await store.upsert(make_product("P1", "Epoxy 2K Fast"))

        options = SearchOptions(
            include_history=True,
            time_range=TimeRange.last_days(7, now=clock.now),
        )
        result = await coordinator.search("epoxy", options)

        assert [m.change.version for m in result.history_matches] == [2]
        assert result.total_count == 2

        unbounded = await coordinator.search("epoxy", SearchOptions(include_history=True))
        assert [m.change.version for m in unbounded.history_matches] == [1, 2]

    @pytest.mark.asyncio
    async def test_history_case_insensitive(self, coordinator, store):
        await store.upsert(make_product("P1", "EPOXY 2K"))

        result = await coordinator.search("Epoxy", SearchOptions(include_history=True))
        assert len(result.history_matches) == 1

    @pytest.mark.asyncio
    async def test_long_term_matches(self, coordinator, store, archiver, clock):
        """Archived changes are searchable with snippets."""
        await store.upsert(make_product("P1", "Epoxy 2K"))
        await store.upsert(make_product("P2", "Foam", "Expanding foam"))
        clock.advance(days=31)
        await archiver.run_once()

        result = await coordinator.search(
            "expanding", SearchOptions(include_history=True, include_long_term=True)
        )

        assert result.history_matches == []
        assert [m.change.entity_id for m in result.archive_matches] == ["P2"]
        snippets = result.archive_matches[0].snippets
        assert snippets
        assert all("expanding" in s.lower() for s in snippets)

    @pytest.mark.asyncio
    async def test_long_term_respects_time_range(self, coordinator, store, archiver, clock):
        """Archive records outside the range are not returned."""
        await store.upsert(make_product("P1", "Epoxy 2K"))
        clock.advance(days=31)
        await archiver.run_once()

        options = SearchOptions(
            include_long_term=True,
            time_range=TimeRange.last_days(7, now=clock.now),
        )
        result = await coordinator.search("epoxy", options)

        assert result.archive_matches == []

    @pytest.mark.asyncio
    async def test_unreadable_archive_skipped(self, coordinator, store, archiver, db, clock):
        """A corrupt archive record is skipped, the query completes."""
        await store.upsert(make_product("P1", "Epoxy 2K"))
        await store.upsert(make_product("P2", "Epoxy Putty"))
        clock.advance(days=31)
        await archiver.run_once()

        with db.transaction() as conn:
            conn.execute(
                "UPDATE long_term_archive SET compressed_payload = ? WHERE entity_id = 'P1'",
                (b"garbage",),
            )

        result = await coordinator.search("epoxy", SearchOptions(include_long_term=True))

        assert [m.change.entity_id for m in result.archive_matches] == ["P2"]
        assert coordinator.stats["decompression_failures"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            [1, 2, 3],
            {"changes": [{"foo": 1}]},
            {"changes": 7},
        ],
        ids=["not-an-object", "change-missing-fields", "changes-not-a-list"],
    )
    async def test_malformed_archive_skipped(
        self, coordinator, store, archiver, db, clock, payload
    ):
        """Valid JSON of the wrong shape is skipped like a corrupt payload."""
        await store.upsert(make_product("P1", "Epoxy 2K"))
        await store.upsert(make_product("P2", "Epoxy Putty"))
        clock.advance(days=31)
        await archiver.run_once()

        data = CompressionCodec("gzip").compress_payload(payload).data
        with db.transaction() as conn:
            conn.execute(
                "UPDATE long_term_archive SET compressed_payload = ?, compression = 'gzip' "
                "WHERE entity_id = 'P1'",
                (data,),
            )

        result = await coordinator.search("epoxy", SearchOptions(include_long_term=True))

        assert [m.change.entity_id for m in result.archive_matches] == ["P2"]
        assert coordinator.stats["decompression_failures"] == 1

    @pytest.mark.asyncio
    async def test_cached_result_not_shared_with_callers(self, coordinator, store):
        """Mutating a returned result does not change what later searches get."""
        await store.upsert(make_product("P1", "Epoxy 2K"))

        first = await coordinator.search("epoxy")
        first.current_matches.clear()

        second = await coordinator.search("epoxy")
        assert second.cached is True
        assert len(second.current_matches) == 1
        second.current_matches[0].entity.name = "renamed by caller"

        third = await coordinator.search("epoxy")
        assert third.cached is True
        assert [m.entity.name for m in third.current_matches] == ["Epoxy 2K"]

    @pytest.mark.asyncio
    async def test_results_capped_per_tier(self, coordinator, store):
        for i in range(5):
            await store.upsert(make_product(f"P{i}", f"Epoxy {i}"))

        result = await coordinator.search("epoxy", SearchOptions(include_history=True, limit=2))

        assert len(result.current_matches) == 2
        assert len(result.history_matches) == 2

    @pytest.mark.asyncio
    async def test_second_search_is_cached(self, coordinator, store):
        """Identical queries are served from the cache."""
        await store.upsert(make_product("P1", "Epoxy 2K"))

        first = await coordinator.search("epoxy")
        second = await coordinator.search("epoxy")

        assert first.cached is False
        assert second.cached is True
        assert second.current_matches == first.current_matches

    @pytest.mark.asyncio
    async def test_different_options_not_shared(self, coordinator, store):
        await store.upsert(make_product("P1", "Epoxy 2K"))

        await coordinator.search("epoxy")
        result = await coordinator.search("epoxy", SearchOptions(include_history=True))

        assert result.cached is False
        assert len(result.history_matches) == 1

    @pytest.mark.asyncio
    async def test_blank_query_rejected(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.search("   ")

    @pytest.mark.asyncio
    async def test_invalid_limit_rejected(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.search("epoxy", SearchOptions(limit=0))


class TestExtractSnippets:
    """Tests for extract_snippets."""

    def test_context_window(self):
        text = "a" * 100 + "EPOXY" + "b" * 100
        snippets = extract_snippets(text, "epoxy")

        assert snippets == ["a" * 50 + "EPOXY" + "b" * 50]

    def test_every_occurrence(self):
        assert len(extract_snippets("epoxy and epoxy", "epoxy", context=2)) == 2

    def test_no_match(self):
        assert extract_snippets("foam", "epoxy") == []
