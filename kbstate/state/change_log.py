"""
Short-term change log.

Every current-state mutation appends exactly one ChangeRecord here, inside
the same transaction as the state write. Records stay until the Archiver
moves them to long-term storage.

Invariants:
    - Append-only: rows are inserted, never updated
    - Rows are deleted only by the Archiver, in the transaction that writes
      their archive record
    - Timestamps are non-decreasing in change_id order
    - (entity_id, version) is unique

How to change safely:
    - Readers must tolerate rows disappearing between pages (archival)
    - Keep query ordering on (timestamp, change_id) for resumable paging
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from ..storage.database import Database
from .models import (
    DAY_MS,
    ChangeAction,
    ChangeCursor,
    ChangeRecord,
    Clock,
    FieldChange,
    TimeRange,
    now_ms,
)

logger = logging.getLogger(__name__)

_DAY_EXPR = "strftime('%Y-%m-%d', timestamp / 1000, 'unixepoch')"


@dataclass(frozen=True)
class ChangeGroup:
    """Change records of one entity on one UTC day, eligible for archival."""

    entity_id: str
    day: str
    change_count: int


class ChangeLog:
    """Append-only, time-ordered log of entity changes.

    Example:
        >>> log = ChangeLog(db)
        >>> async for change in log.query_changes(entity_id="P1"):
        ...     print(change.version, change.changed_fields)
    """

    def __init__(
        self,
        db: Database,
        clock: Clock = now_ms,
        page_size: int = 500,
    ) -> None:
        """Initialize the change log.

        Args:
            db: Shared state database
            clock: Time source (Unix ms)
            page_size: Default rows fetched per page by query_changes
        """
        self.db = db
        self.clock = clock
        self.page_size = page_size

    def next_timestamp(self, conn: sqlite3.Connection) -> int:
        """Timestamp for the next append, never earlier than the last one."""
        row = conn.execute("SELECT MAX(timestamp) FROM change_log").fetchone()
        last = row[0] if row and row[0] is not None else 0
        return max(self.clock(), last)

    def append(self, conn: sqlite3.Connection, record: ChangeRecord) -> ChangeRecord:
        """Insert a change record on the caller's transaction.

        Args:
            conn: Connection with an open write transaction
            record: Record to append (change_id is ignored)

        Returns:
            The record with its assigned change_id
        """
        cursor = conn.execute(
            """
            INSERT INTO change_log (timestamp, entity_id, entity_type, action, version,
                                    changed_fields_json, previous_state_json, new_state_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.timestamp,
                record.entity_id,
                record.entity_type,
                record.action.value,
                record.version,
                json.dumps({k: v.to_dict() for k, v in record.changed_fields.items()}),
                json.dumps(record.previous_state) if record.previous_state is not None else None,
                json.dumps(record.new_state),
            ),
        )
        return record.with_id(cursor.lastrowid)

    async def query_changes(
        self,
        entity_id: str | None = None,
        time_range: TimeRange | None = None,
        page_size: int | None = None,
        after: ChangeCursor | None = None,
    ) -> AsyncIterator[ChangeRecord]:
        """Iterate matching change records in (timestamp, change_id) order.

        Records are fetched one page at a time, so wide ranges never get
        materialized in full. Passing the cursor of the last record seen as
        `after` resumes the sequence right after it.

        Args:
            entity_id: Optional entity filter
            time_range: Optional inclusive time window
            page_size: Rows per page (defaults to the log's page_size)
            after: Resume position

        Yields:
            ChangeRecord in ascending timestamp order
        """
        size = page_size or self.page_size
        position = after

        while True:
            page = self._fetch_page(entity_id, time_range, position, size)
            for record in page:
                yield record

            if len(page) < size:
                return

            position = ChangeCursor.after_record(page[-1])
            # Let other coroutines run between pages
            await asyncio.sleep(0)

    async def get_changes(
        self,
        entity_id: str,
        time_range: TimeRange | None = None,
    ) -> list[ChangeRecord]:
        """Materialize all changes for one entity."""
        return [r async for r in self.query_changes(entity_id=entity_id, time_range=time_range)]

    def _fetch_page(
        self,
        entity_id: str | None,
        time_range: TimeRange | None,
        after: ChangeCursor | None,
        limit: int,
    ) -> list[ChangeRecord]:
        query = "SELECT * FROM change_log WHERE 1 = 1"
        params: list[Any] = []

        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)

        if time_range is not None:
            if time_range.start is not None:
                query += " AND timestamp >= ?"
                params.append(time_range.start)
            if time_range.end is not None:
                query += " AND timestamp <= ?"
                params.append(time_range.end)

        if after is not None:
            query += " AND (timestamp > ? OR (timestamp = ? AND change_id > ?))"
            params.extend([after.timestamp, after.timestamp, after.change_id])

        query += " ORDER BY timestamp ASC, change_id ASC LIMIT ?"
        params.append(limit)

        with self.db.connect() as conn:
            cursor = conn.execute(query, params)
            return [_row_to_record(row) for row in cursor.fetchall()]

    def list_archivable_groups(self, cutoff: int, limit: int) -> list[ChangeGroup]:
        """(entity, day) groups holding records older than cutoff.

        Args:
            cutoff: Only records with timestamp < cutoff are considered
            limit: Maximum groups to return

        Returns:
            Groups ordered by day then entity
        """
        with self.db.connect() as conn:
            cursor = conn.execute(
                f"""
                SELECT entity_id, {_DAY_EXPR} AS day, COUNT(*) AS change_count
                FROM change_log
                WHERE timestamp < ?
                GROUP BY entity_id, day
                ORDER BY day ASC, entity_id ASC
                LIMIT ?
                """,
                (cutoff, limit),
            )
            return [
                ChangeGroup(
                    entity_id=row["entity_id"],
                    day=row["day"],
                    change_count=row["change_count"],
                )
                for row in cursor.fetchall()
            ]

    def fetch_group(
        self,
        conn: sqlite3.Connection,
        group: ChangeGroup,
        day_start: int,
        cutoff: int,
    ) -> list[ChangeRecord]:
        """Load the records of one archivable group on the caller's connection."""
        cursor = conn.execute(
            """
            SELECT * FROM change_log
            WHERE entity_id = ? AND timestamp >= ? AND timestamp < ?
            ORDER BY timestamp ASC, change_id ASC
            """,
            (group.entity_id, day_start, min(day_start + DAY_MS, cutoff)),
        )
        return [_row_to_record(row) for row in cursor.fetchall()]

    def delete_changes(self, conn: sqlite3.Connection, change_ids: list[int]) -> int:
        """Delete exactly the given records. Archiver use only."""
        deleted = 0
        # Stay below SQLite's bound-parameter limit
        for start in range(0, len(change_ids), 500):
            chunk = change_ids[start : start + 500]
            placeholders = ",".join("?" * len(chunk))
            cursor = conn.execute(
                f"DELETE FROM change_log WHERE change_id IN ({placeholders})",
                chunk,
            )
            deleted += cursor.rowcount
        return deleted

    async def count(self, entity_id: str | None = None) -> int:
        with self.db.connect() as conn:
            if entity_id is not None:
                cursor = conn.execute(
                    "SELECT COUNT(*) FROM change_log WHERE entity_id = ?", (entity_id,)
                )
            else:
                cursor = conn.execute("SELECT COUNT(*) FROM change_log")
            return cursor.fetchone()[0]

    async def count_older_than(self, ts: int) -> int:
        with self.db.connect() as conn:
            cursor = conn.execute("SELECT COUNT(*) FROM change_log WHERE timestamp < ?", (ts,))
            return cursor.fetchone()[0]

    async def oldest_timestamp(self) -> int | None:
        with self.db.connect() as conn:
            return conn.execute("SELECT MIN(timestamp) FROM change_log").fetchone()[0]

    async def newest_timestamp(self) -> int | None:
        with self.db.connect() as conn:
            return conn.execute("SELECT MAX(timestamp) FROM change_log").fetchone()[0]


def _row_to_record(row: sqlite3.Row) -> ChangeRecord:
    previous = row["previous_state_json"]
    return ChangeRecord(
        change_id=row["change_id"],
        timestamp=row["timestamp"],
        entity_id=row["entity_id"],
        entity_type=row["entity_type"],
        action=ChangeAction(row["action"]),
        version=row["version"],
        changed_fields={
            k: FieldChange.from_dict(v) for k, v in json.loads(row["changed_fields_json"]).items()
        },
        previous_state=json.loads(previous) if previous is not None else None,
        new_state=json.loads(row["new_state_json"]),
    )
