"""
Current-state store for knowledge entities.

Holds exactly one live record per entity. Every upsert writes the new record
and its change record in one SQLite transaction, so a failed upsert leaves
no trace in either table.

Invariants:
    - One row per entity_id
    - version = previous version + 1, written with a compare-and-swap
    - The change record is appended on the same connection and transaction
    - created_at is set once and preserved by later upserts

How to change safely:
    - New entity fields need a column with a default and a to_dict entry
    - Keep search_text derived from EntityRecord.search_text so the FTS
      index and cache invalidation agree on what is searchable
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from ..errors import ConcurrencyConflict, ValidationError
from ..storage.database import Database
from .change_log import ChangeLog
from .diff import compact_state, compute_changes
from .models import ChangeRecord, EntityRecord, EntityType, UpsertResult

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


@dataclass
class StateMatch:
    """Search hit from the current-state FTS index.

    Attributes:
        entity: Matching entity
        rank: FTS5 rank (lower is better)
        highlights: Snippet of the matching text
    """

    entity: EntityRecord
    rank: float
    highlights: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "rank": self.rank,
            "highlights": self.highlights,
        }


def query_terms(query: str) -> list[str]:
    """Lower-cased word tokens of a search query."""
    return _TOKEN_RE.findall(query.lower())


class CurrentStateStore:
    """SQLite store for the live record of every entity.

    Thread safety:
        Each operation opens its own connection. Writes run in
        BEGIN IMMEDIATE transactions; the version compare-and-swap detects
        writers that raced from another process.

    Example:
        >>> store = CurrentStateStore(db, change_log)
        >>> result = await store.upsert(EntityRecord("P1", "product", name="Epoxy 2K"))
        >>> result.version
        1
    """

    def __init__(self, db: Database, change_log: ChangeLog) -> None:
        """Initialize the store.

        Args:
            db: Shared state database
            change_log: Change log written in the same transaction
        """
        self.db = db
        self.change_log = change_log

    async def upsert(
        self,
        entity: EntityRecord,
        expected_version: int | None = None,
    ) -> UpsertResult:
        """Create or replace an entity and record the change.

        Args:
            entity: Complete incoming record (version fields are ignored)
            expected_version: If set, the stored version must match
                (0 means the entity must not exist yet)

        Returns:
            UpsertResult with the stored record and its change record

        Raises:
            ValidationError: If entity_id is blank
            ConcurrencyConflict: If the version check fails
        """
        entity_id = (entity.entity_id or "").strip()
        if not entity_id:
            raise ValidationError("entity_id is required", field_name="entity_id")

        with self.db.transaction() as conn:
            prior = self._get(conn, entity_id)
            prior_version = prior.version if prior else 0

            if expected_version is not None and expected_version != prior_version:
                raise ConcurrencyConflict(entity_id, expected_version, prior_version)

            summary = compute_changes(prior, entity)
            ts = self.change_log.next_timestamp(conn)

            stored = EntityRecord(
                entity_id=entity_id,
                type=entity.type,
                name=entity.name,
                content=entity.content,
                metadata=entity.metadata,
                relationships=entity.relationships,
                version=prior_version + 1,
                last_modified=ts,
                change_count=(prior.change_count if prior else 0) + 1,
                created_at=prior.created_at if prior else ts,
            )

            try:
                if prior is None:
                    self._insert(conn, stored)
                else:
                    self._compare_and_swap(conn, stored, prior_version)

                change = self.change_log.append(
                    conn,
                    ChangeRecord(
                        timestamp=ts,
                        entity_id=entity_id,
                        entity_type=stored.type.value,
                        action=summary.action,
                        version=stored.version,
                        changed_fields=summary.changed_fields,
                        previous_state=compact_state(prior) if prior else None,
                        new_state=compact_state(stored),
                    ),
                )
            except sqlite3.IntegrityError as e:
                # Another writer created this entity or version first
                actual = self._get(conn, entity_id)
                raise ConcurrencyConflict(
                    entity_id, prior_version, actual.version if actual else 0
                ) from e

        logger.debug(
            "Upserted entity",
            extra={
                "entity_id": entity_id,
                "version": stored.version,
                "action": summary.action.value,
                "changed_fields": len(summary.changed_fields),
            },
        )

        return UpsertResult(entity=stored, change=change)

    def _insert(self, conn: sqlite3.Connection, entity: EntityRecord) -> None:
        conn.execute(
            """
            INSERT INTO current_state (entity_id, entity_type, name, content_json,
                                       metadata_json, relationships_json, search_text,
                                       version, change_count, created_at, last_modified)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity.entity_id,
                entity.type.value,
                entity.name,
                json.dumps(entity.content),
                json.dumps(entity.metadata),
                json.dumps(entity.relationships),
                entity.search_text(),
                entity.version,
                entity.change_count,
                entity.created_at,
                entity.last_modified,
            ),
        )

    def _compare_and_swap(
        self,
        conn: sqlite3.Connection,
        entity: EntityRecord,
        expected_version: int,
    ) -> None:
        cursor = conn.execute(
            """
            UPDATE current_state
            SET entity_type = ?, name = ?, content_json = ?, metadata_json = ?,
                relationships_json = ?, search_text = ?, version = ?, change_count = ?,
                last_modified = ?
            WHERE entity_id = ? AND version = ?
            """,
            (
                entity.type.value,
                entity.name,
                json.dumps(entity.content),
                json.dumps(entity.metadata),
                json.dumps(entity.relationships),
                entity.search_text(),
                entity.version,
                entity.change_count,
                entity.last_modified,
                entity.entity_id,
                expected_version,
            ),
        )
        if cursor.rowcount == 0:
            actual = self._get(conn, entity.entity_id)
            raise ConcurrencyConflict(
                entity.entity_id, expected_version, actual.version if actual else 0
            )

    async def get_entity(self, entity_id: str) -> EntityRecord | None:
        """Get the current record of an entity.

        Returns:
            EntityRecord or None if the entity does not exist
        """
        with self.db.connect() as conn:
            return self._get(conn, entity_id)

    def _get(self, conn: sqlite3.Connection, entity_id: str) -> EntityRecord | None:
        cursor = conn.execute("SELECT * FROM current_state WHERE entity_id = ?", (entity_id,))
        row = cursor.fetchone()
        return _row_to_entity(row) if row else None

    async def list_entities(
        self,
        entity_type: EntityType | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EntityRecord]:
        """List entities, most recently modified first."""
        query = "SELECT * FROM current_state"
        params: list[Any] = []

        if entity_type is not None:
            query += " WHERE entity_type = ?"
            params.append(EntityType.parse(entity_type).value)

        query += " ORDER BY last_modified DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self.db.connect() as conn:
            cursor = conn.execute(query, params)
            return [_row_to_entity(row) for row in cursor.fetchall()]

    def iter_entities(
        self,
        conn: sqlite3.Connection,
        batch_size: int = 500,
    ) -> Iterator[list[EntityRecord]]:
        """Yield all entities in entity_id order, one batch at a time.

        Runs on the caller's connection so a surrounding read transaction
        gives every batch the same consistent view.
        """
        last_id = ""
        while True:
            cursor = conn.execute(
                """
                SELECT * FROM current_state
                WHERE entity_id > ?
                ORDER BY entity_id ASC
                LIMIT ?
                """,
                (last_id, batch_size),
            )
            batch = [_row_to_entity(row) for row in cursor.fetchall()]
            if not batch:
                return
            yield batch
            if len(batch) < batch_size:
                return
            last_id = batch[-1].entity_id

    async def search(self, query: str, limit: int = 50) -> list[StateMatch]:
        """Full-text search over entity name and searchable text.

        Every query term must match. Results are ordered by FTS5 rank.

        Args:
            query: Free-text query
            limit: Maximum results

        Returns:
            List of matches, best first
        """
        terms = query_terms(query)
        if not terms:
            return []

        match_expr = " ".join('"' + term.replace('"', '""') + '"' for term in terms)

        try:
            with self.db.connect() as conn:
                cursor = conn.execute(
                    """
                    SELECT s.*, fts.rank,
                           snippet(current_state_fts, -1, '[', ']', '...', 12) AS highlights
                    FROM current_state s
                    JOIN current_state_fts fts ON s.rowid = fts.rowid
                    WHERE current_state_fts MATCH ?
                    ORDER BY fts.rank
                    LIMIT ?
                    """,
                    (match_expr, limit),
                )
                return [
                    StateMatch(
                        entity=_row_to_entity(row),
                        rank=row["rank"],
                        highlights=row["highlights"],
                    )
                    for row in cursor.fetchall()
                ]
        except sqlite3.OperationalError as e:
            # Handle FTS query errors gracefully
            if "fts5" in str(e).lower():
                logger.warning(f"FTS query error: {e}")
                return []
            raise

    async def count(self) -> int:
        with self.db.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM current_state").fetchone()[0]

    async def last_modified(self) -> int | None:
        with self.db.connect() as conn:
            return conn.execute("SELECT MAX(last_modified) FROM current_state").fetchone()[0]


def _row_to_entity(row: sqlite3.Row) -> EntityRecord:
    return EntityRecord(
        entity_id=row["entity_id"],
        type=row["entity_type"],
        name=row["name"],
        content=json.loads(row["content_json"]),
        metadata=json.loads(row["metadata_json"]),
        relationships=json.loads(row["relationships_json"]),
        version=row["version"],
        last_modified=row["last_modified"],
        change_count=row["change_count"],
        created_at=row["created_at"],
    )
