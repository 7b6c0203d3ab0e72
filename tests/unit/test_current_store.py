"""
Unit tests for the current-state store.

Tests cover:
- Create and modify with version bumps
- Atomic state + change-log writes
- Expected-version checks
- Full-text search
- Batched iteration
"""

import asyncio
import sqlite3

import pytest

from kbstate.errors import ConcurrencyConflict, ValidationError
from kbstate.state import ChangeAction, ChangeLog, CurrentStateStore, EntityRecord
from kbstate.storage import Database


def make_product(entity_id="P1", name="Epoxy 2K", description="Two component epoxy resin"):
    return EntityRecord(
        entity_id=entity_id,
        type="product",
        name=name,
        content={"description": description},
        metadata={"category": "adhesives"},
    )


class TestCurrentStateStore:
    """Tests for CurrentStateStore."""

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

    @pytest.mark.asyncio
    async def test_create_entity(self, store, change_log, clock):
        """First upsert creates version 1 and one change record."""
        result = await store.upsert(make_product())

        assert result.version == 1
        assert result.entity.created_at == clock.now
        assert result.entity.last_modified == clock.now
        assert result.change_summary.action is ChangeAction.CREATED
        assert result.change.change_id is not None

        fetched = await store.get_entity("P1")
        assert fetched == result.entity
        assert await change_log.count("P1") == 1

    @pytest.mark.asyncio
    async def test_modify_entity(self, store, change_log, clock):
        """Each upsert bumps the version by one and records one change."""
        await store.upsert(make_product())
        clock.advance(ms=1000)
        result = await store.upsert(make_product(name="Epoxy 2K Fast"))

        assert result.version == 2
        assert result.entity.change_count == 2
        assert result.entity.created_at == clock.now - 1000
        assert result.change_summary.action is ChangeAction.MODIFIED
        assert result.change_summary.fields == ["name"]
        assert result.change.previous_state["name"] == "Epoxy 2K"
        assert result.change.new_state["name"] == "Epoxy 2K Fast"

        changes = await change_log.get_changes("P1")
        assert [c.version for c in changes] == [1, 2]

    @pytest.mark.asyncio
    async def test_incoming_version_fields_ignored(self, store):
        """Version fields on the incoming record do not affect the result."""
        entity = make_product()
        entity.version = 42
        entity.change_count = 42

        result = await store.upsert(entity)

        assert result.version == 1
        assert result.entity.change_count == 1

    @pytest.mark.asyncio
    async def test_blank_entity_id_rejected(self, store, change_log):
        """Blank ids are rejected and nothing is written."""
        with pytest.raises(ValidationError):
            await store.upsert(make_product(entity_id="  "))

        assert await store.count() == 0
        assert await change_log.count() == 0

    @pytest.mark.asyncio
    async def test_expected_version_match(self, store):
        """Matching expected_version succeeds."""
        await store.upsert(make_product(), expected_version=0)
        result = await store.upsert(make_product(name="v2"), expected_version=1)
        assert result.version == 2

    @pytest.mark.asyncio
    async def test_expected_version_mismatch(self, store, change_log):
        """Stale expected_version raises and leaves no trace."""
        await store.upsert(make_product())

        with pytest.raises(ConcurrencyConflict) as exc_info:
            await store.upsert(make_product(name="stale"), expected_version=0)

        assert exc_info.value.actual_version == 1
        assert (await store.get_entity("P1")).name == "Epoxy 2K"
        assert await change_log.count("P1") == 1

    @pytest.mark.asyncio
    async def test_failed_change_append_rolls_back_state(self, store, change_log, monkeypatch):
        """A failure after the state write rolls back both tables."""
        await store.upsert(make_product())

        def fail_append(conn, record):
            raise RuntimeError("disk full")

        monkeypatch.setattr(change_log, "append", fail_append)

        with pytest.raises(RuntimeError):
            await store.upsert(make_product(name="never stored"))

        entity = await store.get_entity("P1")
        assert entity.version == 1
        assert entity.name == "Epoxy 2K"
        assert await change_log.count("P1") == 1

    @pytest.mark.asyncio
    async def test_lost_create_race_is_conflict(self, store, change_log, monkeypatch):
        """A create that collides with another writer's row raises ConcurrencyConflict."""
        await store.upsert(make_product())

        real_get = store._get
        calls = []

        def stale_get(conn, entity_id):
            calls.append(entity_id)
            # First read misses the row another writer already created
            return None if len(calls) == 1 else real_get(conn, entity_id)

        monkeypatch.setattr(store, "_get", stale_get)

        with pytest.raises(ConcurrencyConflict) as exc_info:
            await store.upsert(make_product(name="duplicate create"))

        assert exc_info.value.expected_version == 0
        assert exc_info.value.actual_version == 1
        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)
        assert (await store.get_entity("P1")).name == "Epoxy 2K"
        assert await change_log.count("P1") == 1

    @pytest.mark.asyncio
    async def test_get_missing_entity(self, store):
        """Missing entities return None."""
        assert await store.get_entity("nope") is None

    @pytest.mark.asyncio
    async def test_timestamps_never_go_backwards(self, store, change_log, clock):
        """A clock that steps back does not reorder the log."""
        await store.upsert(make_product())
        clock.advance(ms=-5000)
        result = await store.upsert(make_product(name="later"))

        first, second = await change_log.get_changes("P1")
        assert second.timestamp >= first.timestamp
        assert result.entity.last_modified == second.timestamp

    @pytest.mark.asyncio
    async def test_search_matches_current_state(self, store):
        """FTS search finds entities by name and content."""
        await store.upsert(make_product("P1", "Epoxy 2K"))
        await store.upsert(make_product("P2", "Polyurethane Foam", "Expanding foam"))

        matches = await store.search("epoxy")
        assert [m.entity.entity_id for m in matches] == ["P1"]

        matches = await store.search("foam")
        assert [m.entity.entity_id for m in matches] == ["P2"]

    @pytest.mark.asyncio
    async def test_search_reflects_updates(self, store):
        """The FTS index follows updates."""
        await store.upsert(make_product("P1", "Epoxy 2K"))
        await store.upsert(make_product("P1", "Silicone Sealant", "Neutral cure silicone"))

        assert await store.search("epoxy") == []
        assert [m.entity.entity_id for m in await store.search("silicone")] == ["P1"]

    @pytest.mark.asyncio
    async def test_search_requires_all_terms(self, store):
        """Every query term must match."""
        await store.upsert(make_product("P1", "Epoxy 2K"))

        assert len(await store.search("epoxy resin")) == 1
        assert await store.search("epoxy foam") == []

    @pytest.mark.asyncio
    async def test_search_ignores_fts_syntax(self, store):
        """Operator characters in queries do not raise."""
        await store.upsert(make_product())
        assert len(await store.search('epoxy" (')) == 1
        assert len(await store.search("resin*")) == 1
        assert await store.search("***") == []

    @pytest.mark.asyncio
    async def test_search_limit(self, store):
        """Results are capped at limit."""
        for i in range(5):
            await store.upsert(make_product(f"P{i}", f"Epoxy {i}"))

        assert len(await store.search("epoxy", limit=3)) == 3

    @pytest.mark.asyncio
    async def test_iter_entities_batches(self, store, db):
        """Iteration yields every entity once in bounded batches."""
        for i in range(7):
            await store.upsert(make_product(f"P{i}"))

        with db.read_transaction() as conn:
            batches = list(store.iter_entities(conn, batch_size=3))

        assert [len(b) for b in batches] == [3, 3, 1]
        ids = [e.entity_id for batch in batches for e in batch]
        assert ids == sorted(f"P{i}" for i in range(7))

    @pytest.mark.asyncio
    async def test_list_entities_by_type(self, store):
        """list_entities filters by type."""
        await store.upsert(make_product("P1"))
        await store.upsert(EntityRecord(entity_id="D1", type="document", name="Datasheet"))

        products = await store.list_entities(entity_type="product")
        assert [e.entity_id for e in products] == ["P1"]

    @pytest.mark.asyncio
    async def test_concurrent_different_entities(self, store):
        """Upserts to different entities all succeed."""
        results = await asyncio.gather(*(store.upsert(make_product(f"P{i}")) for i in range(10)))

        assert all(r.version == 1 for r in results)
        assert await store.count() == 10
