"""
Long-term archive table access.

Each row bundles one entity's change records for one UTC day, serialized as
JSON and compressed. Rows are written only by the Archiver and removed only
by retention cleanup.

Payload format (before compression):
    {
        "entity_id": "P1",
        "date": "2026-01-31",
        "change_count": 3,
        "changes": [<ChangeRecord.to_dict()>, ...],
        "states": [<new_state digest>, ...]
    }
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from ..codec import get_codec
from ..errors import DecompressionError
from ..state.models import ChangeRecord, TimeRange
from ..storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class ArchiveRecord:
    """Compressed bundle of one entity's changes for one day.

    Attributes:
        archive_id: Row identifier
        entity_id: Entity the changes belong to
        period_day: UTC day (YYYY-MM-DD)
        period_start: Earliest change timestamp (Unix ms)
        period_end: Latest change timestamp (Unix ms)
        compressed_payload: Compressed JSON payload
        compression: Algorithm used for the payload
        compression_ratio: compressed_size / original_size
        change_count: Number of change records in the bundle
        first_change_id: Lowest archived change_id
        last_change_id: Highest archived change_id
        original_size: Serialized size before compression
        compressed_size: Size of compressed_payload
        archived_at: When the bundle was written (Unix ms)
    """

    archive_id: int
    entity_id: str
    period_day: str
    period_start: int
    period_end: int
    compressed_payload: bytes
    compression: str
    compression_ratio: float
    change_count: int
    first_change_id: int
    last_change_id: int
    original_size: int
    compressed_size: int
    archived_at: int

    def decompress(self) -> dict[str, Any]:
        """Decode the payload.

        Raises:
            DecompressionError: If the payload is unreadable
        """
        try:
            payload = get_codec(self.compression).decompress_payload(self.compressed_payload)
        except ValueError as e:
            raise DecompressionError(f"Archive record {self.archive_id}: {e}") from e
        if not isinstance(payload, dict):
            raise DecompressionError(
                f"Archive record {self.archive_id}: payload is not an object"
            )
        return payload

    def changes(self) -> list[ChangeRecord]:
        """Change records contained in the bundle.

        Raises:
            DecompressionError: If the payload is unreadable or malformed
        """
        payload = self.decompress()
        try:
            return [ChangeRecord.from_dict(c) for c in payload.get("changes", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise DecompressionError(
                f"Archive record {self.archive_id} holds a malformed change: {e!r}"
            ) from e

    def summary(self) -> dict[str, Any]:
        """Row metadata without the payload."""
        return {
            "archive_id": self.archive_id,
            "entity_id": self.entity_id,
            "period_day": self.period_day,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "compression": self.compression,
            "compression_ratio": self.compression_ratio,
            "change_count": self.change_count,
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
            "archived_at": self.archived_at,
        }


class LongTermArchive:
    """Reads and retention for the long_term_archive table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def list_archives(
        self,
        entity_id: str | None = None,
        time_range: TimeRange | None = None,
        limit: int | None = None,
    ) -> list[ArchiveRecord]:
        """List archive records, oldest period first.

        Args:
            entity_id: Optional entity filter
            time_range: Keep records whose [period_start, period_end]
                overlaps this range
            limit: Optional maximum number of records

        Returns:
            Matching archive records (payloads still compressed)
        """
        query = "SELECT * FROM long_term_archive WHERE 1 = 1"
        params: list[Any] = []

        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)

        if time_range is not None:
            if time_range.start is not None:
                query += " AND period_end >= ?"
                params.append(time_range.start)
            if time_range.end is not None:
                query += " AND period_start <= ?"
                params.append(time_range.end)

        query += " ORDER BY period_start ASC, archive_id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.db.connect() as conn:
            cursor = conn.execute(query, params)
            return [_row_to_archive(row) for row in cursor.fetchall()]

    async def purge_older_than(self, cutoff: int) -> int:
        """Delete archive records whose period ended before cutoff."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM long_term_archive WHERE period_end < ?",
                (cutoff,),
            )
            deleted = cursor.rowcount

        if deleted:
            logger.info("Purged long-term archive records", extra={"deleted": deleted})
        return deleted

    async def get_stats(self) -> dict[str, Any]:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count,
                       COALESCE(SUM(compressed_size), 0) AS total_compressed_bytes,
                       COALESCE(SUM(original_size), 0) AS total_original_bytes,
                       AVG(compression_ratio) AS avg_compression_ratio,
                       COALESCE(SUM(change_count), 0) AS archived_changes
                FROM long_term_archive
                """
            ).fetchone()
            return {
                "count": row["count"],
                "total_compressed_bytes": row["total_compressed_bytes"],
                "total_original_bytes": row["total_original_bytes"],
                "avg_compression_ratio": row["avg_compression_ratio"],
                "archived_changes": row["archived_changes"],
            }


def _row_to_archive(row: sqlite3.Row) -> ArchiveRecord:
    return ArchiveRecord(
        archive_id=row["archive_id"],
        entity_id=row["entity_id"],
        period_day=row["period_day"],
        period_start=row["period_start"],
        period_end=row["period_end"],
        compressed_payload=bytes(row["compressed_payload"]),
        compression=row["compression"],
        compression_ratio=row["compression_ratio"],
        change_count=row["change_count"],
        first_change_id=row["first_change_id"],
        last_change_id=row["last_change_id"],
        original_size=row["original_size"],
        compressed_size=row["compressed_size"],
        archived_at=row["archived_at"],
    )
