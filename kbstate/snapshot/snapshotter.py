"""
Current-state snapshotter.

The Snapshotter periodically serializes the entire current-state store into
one compressed artifact. This enables:
- Point-in-time copies of every entity
- Recovery of the current state after operator error
- Cheap comparison of the knowledge base across days

Snapshot payload (before compression):
    {"entities": [<EntityRecord.to_dict()>, ...], "count": N, "timestamp": <ms>}

Invariants:
    - Entities are read in batches inside one read transaction (consistent view)
    - Only complete snapshots are stored; any failure stores nothing
    - Snapshots never touch the change log
    - Snapshots are independent: deleting one never affects another

How to change safely:
    - Add new metadata columns, don't remove existing ones
    - Test load_snapshot with old rows before changing the payload layout
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from ..codec import CompressionCodec, compute_checksum, get_codec
from ..errors import DecompressionError
from ..state.current_store import CurrentStateStore
from ..state.models import DAY_MS, Clock, EntityRecord, now_ms
from ..storage.database import Database

logger = logging.getLogger(__name__)

MANUAL_SNAPSHOT = "manual"
SCHEDULED_SNAPSHOT = "scheduled"


@dataclass
class SnapshotInfo:
    """Information about a snapshot.

    Attributes:
        snapshot_id: Snapshot identifier (UUID)
        type: Snapshot label (scheduled, daily, weekly, manual, ...)
        description: Optional operator note
        snapshot_date: When the snapshot was taken (Unix ms)
        entity_count: Number of entities captured
        size_bytes: Compressed size in bytes
        original_size: Serialized size before compression
        checksum: SHA-256 of the compressed payload
        compression: Compression algorithm
    """

    snapshot_id: str
    type: str
    description: str | None
    snapshot_date: int
    entity_count: int
    size_bytes: int
    original_size: int
    checksum: str
    compression: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "type": self.type,
            "description": self.description,
            "snapshot_date": self.snapshot_date,
            "entity_count": self.entity_count,
            "size_bytes": self.size_bytes,
            "original_size": self.original_size,
            "checksum": self.checksum,
            "compression": self.compression,
        }


class Snapshotter:
    """Creates and manages current-state snapshots.

    The Snapshotter runs as a background loop that takes a snapshot of type
    `scheduled_type` every interval_seconds. create_snapshot() can also be
    called directly for manual snapshots.

    Example:
        >>> snapshotter = Snapshotter(db, current_store)
        >>> info = await snapshotter.create_snapshot("manual", "before reimport")
        >>> entities = await snapshotter.load_snapshot(info.snapshot_id)
    """

    def __init__(
        self,
        db: Database,
        current_store: CurrentStateStore,
        clock: Clock = now_ms,
        interval_seconds: int = 86400,
        batch_size: int = 500,
        compression: str = "gzip",
        scheduled_type: str = SCHEDULED_SNAPSHOT,
    ) -> None:
        """Initialize the snapshotter.

        Args:
            db: Shared state database
            current_store: Store to snapshot
            clock: Time source (Unix ms)
            interval_seconds: Interval between scheduled snapshots
            batch_size: Entities read per batch
            compression: Compression algorithm ("gzip" or "none")
            scheduled_type: Type label for loop-created snapshots
        """
        self.db = db
        self.current_store = current_store
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.codec = CompressionCodec(compression)
        self.scheduled_type = scheduled_type

        self._running = False
        self._snapshot_count = 0
        self._last_snapshot_at: int | None = None

    async def start(self) -> None:
        """Start the snapshotter loop."""
        if self._running:
            logger.warning("Snapshotter already running")
            return

        self._running = True
        logger.info(
            "Starting snapshotter",
            extra={"interval_seconds": self.interval_seconds, "type": self.scheduled_type},
        )

        try:
            while self._running:
                try:
                    await self.create_snapshot(self.scheduled_type)
                except Exception as e:
                    logger.error(f"Scheduled snapshot failed: {e}", exc_info=True)
                await asyncio.sleep(self.interval_seconds)

        except asyncio.CancelledError:
            logger.info("Snapshotter cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the snapshotter loop."""
        self._running = False
        logger.info("Stopping snapshotter")

    async def create_snapshot(
        self,
        snapshot_type: str = SCHEDULED_SNAPSHOT,
        description: str | None = None,
    ) -> SnapshotInfo:
        """Create and store a snapshot of the whole current state.

        Args:
            snapshot_type: Type label
            description: Optional operator note

        Returns:
            SnapshotInfo of the stored snapshot
        """
        snapshot_date = self.clock()
        entities = await self._read_all_entities()

        payload = {
            "entities": [e.to_dict() for e in entities],
            "count": len(entities),
            "timestamp": snapshot_date,
        }

        # Compress off the event loop
        encoded = await asyncio.get_running_loop().run_in_executor(
            None, self.codec.compress_payload, payload
        )
        checksum = compute_checksum(encoded.data)

        info = SnapshotInfo(
            snapshot_id=str(uuid.uuid4()),
            type=snapshot_type,
            description=description,
            snapshot_date=snapshot_date,
            entity_count=len(entities),
            size_bytes=encoded.compressed_size,
            original_size=encoded.original_size,
            checksum=checksum,
            compression=encoded.algorithm,
        )

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO snapshots (snapshot_id, snapshot_type, description, snapshot_date,
                                       entity_count, size_bytes, original_size, checksum,
                                       compression, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    info.snapshot_id,
                    info.type,
                    info.description,
                    info.snapshot_date,
                    info.entity_count,
                    info.size_bytes,
                    info.original_size,
                    info.checksum,
                    info.compression,
                    encoded.data,
                ),
            )

        self._snapshot_count += 1
        self._last_snapshot_at = snapshot_date
        logger.info(
            f"Created {snapshot_type} snapshot with {len(entities)} entities",
            extra={
                "snapshot_id": info.snapshot_id,
                "entity_count": info.entity_count,
                "size_bytes": info.size_bytes,
            },
        )

        return info

    async def _read_all_entities(self) -> list[EntityRecord]:
        entities: list[EntityRecord] = []
        with self.db.read_transaction() as conn:
            for batch in self.current_store.iter_entities(conn, self.batch_size):
                entities.extend(batch)
                # Readers under WAL mode are not blocked by writers
                await asyncio.sleep(0)
        return entities

    async def get_snapshot(self, snapshot_id: str) -> SnapshotInfo | None:
        """Get snapshot metadata, or None if it does not exist."""
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM snapshots WHERE snapshot_id = ?", (snapshot_id,)
            ).fetchone()
            return _row_to_info(row) if row else None

    async def list_snapshots(
        self,
        snapshot_type: str | None = None,
        limit: int = 100,
    ) -> list[SnapshotInfo]:
        """List snapshots, newest first."""
        query = "SELECT * FROM snapshots"
        params: list[Any] = []
        if snapshot_type is not None:
            query += " WHERE snapshot_type = ?"
            params.append(snapshot_type)
        query += " ORDER BY snapshot_date DESC LIMIT ?"
        params.append(limit)

        with self.db.connect() as conn:
            cursor = conn.execute(query, params)
            return [_row_to_info(row) for row in cursor.fetchall()]

    async def load_snapshot(self, snapshot_id: str) -> list[EntityRecord] | None:
        """Decompress a snapshot back into entity records.

        Returns:
            Entities in the snapshot, or None if the snapshot does not exist

        Raises:
            DecompressionError: If the checksum does not match or the
                payload is unreadable
        """
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT checksum, compression, payload FROM snapshots WHERE snapshot_id = ?",
                (snapshot_id,),
            ).fetchone()

        if row is None:
            return None

        data = bytes(row["payload"])
        if compute_checksum(data) != row["checksum"]:
            raise DecompressionError(f"Checksum mismatch for snapshot {snapshot_id}")

        payload = get_codec(row["compression"]).decompress_payload(data)
        return [EntityRecord.from_dict(e) for e in payload.get("entities", [])]

    async def delete_snapshot(self, snapshot_id: str) -> bool:
        """Delete one snapshot. Returns False if it did not exist."""
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM snapshots WHERE snapshot_id = ?", (snapshot_id,))
            return cursor.rowcount > 0

    async def purge_older_than(self, retention_days: int) -> int:
        """Delete non-manual snapshots older than the retention window."""
        cutoff = self.clock() - retention_days * DAY_MS
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM snapshots WHERE snapshot_date < ? AND snapshot_type != ?",
                (cutoff, MANUAL_SNAPSHOT),
            )
            deleted = cursor.rowcount

        if deleted:
            logger.info("Purged old snapshots", extra={"deleted": deleted})
        return deleted

    async def get_stats(self) -> dict[str, Any]:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count,
                       MAX(snapshot_date) AS latest,
                       COALESCE(SUM(size_bytes), 0) AS total_bytes
                FROM snapshots
                """
            ).fetchone()
            return {
                "count": row["count"],
                "latest": row["latest"],
                "total_bytes": row["total_bytes"],
            }

    @property
    def stats(self) -> dict[str, Any]:
        """Get snapshotter statistics."""
        return {
            "running": self._running,
            "snapshot_count": self._snapshot_count,
            "last_snapshot_at": self._last_snapshot_at,
        }


def _row_to_info(row: sqlite3.Row) -> SnapshotInfo:
    return SnapshotInfo(
        snapshot_id=row["snapshot_id"],
        type=row["snapshot_type"],
        description=row["description"],
        snapshot_date=row["snapshot_date"],
        entity_count=row["entity_count"],
        size_bytes=row["size_bytes"],
        original_size=row["original_size"],
        checksum=row["checksum"],
        compression=row["compression"],
    )
