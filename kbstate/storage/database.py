"""
SQLite database shared by all knowledge state tiers.

One database file holds every persisted tier so that a current-state write
and its change record, or an archive insert and the matching change-log
delete, commit in a single transaction.

Invariants:
    - One SQLite file per data directory
    - Every multi-statement write runs inside BEGIN IMMEDIATE ... COMMIT
    - The FTS index is maintained by triggers, never written directly

How to change safely:
    - Schema migrations must be backward compatible
    - Bump SCHEMA_VERSION and add statements, never edit existing ones
    - Test with large datasets before production

Table schema:
    current_state:
        - entity_id TEXT PRIMARY KEY
        - entity_type TEXT
        - name TEXT
        - content_json / metadata_json / relationships_json TEXT (JSON)
        - search_text TEXT (flattened searchable text)
        - version INTEGER
        - change_count INTEGER
        - created_at / last_modified INTEGER (Unix ms)

    current_state_fts:
        - FTS5 virtual table over (name, search_text)

    change_log:
        - change_id INTEGER PRIMARY KEY AUTOINCREMENT
        - timestamp INTEGER (Unix ms)
        - entity_id / entity_type / action TEXT
        - version INTEGER
        - changed_fields_json / previous_state_json / new_state_json TEXT
        - UNIQUE (entity_id, version)

    long_term_archive:
        - archive_id INTEGER PRIMARY KEY AUTOINCREMENT
        - entity_id TEXT, period_day TEXT
        - period_start / period_end INTEGER
        - compressed_payload BLOB
        - compression TEXT, compression_ratio REAL
        - change_count / first_change_id / last_change_id INTEGER
        - UNIQUE (entity_id, first_change_id)

    snapshots:
        - snapshot_id TEXT PRIMARY KEY
        - snapshot_type TEXT, description TEXT
        - snapshot_date INTEGER
        - entity_count / size_bytes / original_size INTEGER
        - checksum TEXT, compression TEXT, payload BLOB
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import StoreInitializationError

logger = logging.getLogger(__name__)


class Database:
    """Connection factory and schema owner for the state database.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> db = Database("/var/lib/kbstate")
        >>> db.initialize()
        >>> with db.transaction() as conn:
        ...     conn.execute("DELETE FROM snapshots WHERE snapshot_type = 'manual'")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "knowledge_state.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the database handle.

        Args:
            data_dir: Directory for the SQLite file
            db_filename: SQLite file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages

    def initialize(self) -> None:
        """Create the data directory and schema.

        Raises:
            StoreInitializationError: If the database cannot be created
        """
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with self.connect() as conn:
                self._create_schema(conn)
        except (OSError, sqlite3.Error) as e:
            raise StoreInitializationError(
                f"Cannot initialize state database at {self.db_path}: {e}"
            ) from e

        logger.info("Initialized state database", extra={"db_path": str(self.db_path)})

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection in autocommit mode."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with a write transaction.

        Commits when the block exits normally, rolls back on any exception.
        """
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    @contextmanager
    def read_transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with a read transaction for a consistent view."""
        with self.connect() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.execute("ROLLBACK")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            -- Current state: one live record per entity
            CREATE TABLE IF NOT EXISTS current_state (
                entity_id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                content_json TEXT NOT NULL DEFAULT '{}',
                metadata_json TEXT NOT NULL DEFAULT '{}',
                relationships_json TEXT NOT NULL DEFAULT '[]',
                search_text TEXT NOT NULL DEFAULT '',
                version INTEGER NOT NULL,
                change_count INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                last_modified INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_current_type ON current_state(entity_type);
            CREATE INDEX IF NOT EXISTS idx_current_modified ON current_state(last_modified DESC);

            -- FTS5 virtual table for current state search
            CREATE VIRTUAL TABLE IF NOT EXISTS current_state_fts USING fts5(
                name,
                search_text,
                content='current_state',
                content_rowid='rowid'
            );

            -- Triggers to keep FTS in sync
            CREATE TRIGGER IF NOT EXISTS current_state_ai AFTER INSERT ON current_state BEGIN
                INSERT INTO current_state_fts(rowid, name, search_text)
                VALUES (new.rowid, new.name, new.search_text);
            END;

            CREATE TRIGGER IF NOT EXISTS current_state_ad AFTER DELETE ON current_state BEGIN
                INSERT INTO current_state_fts(current_state_fts, rowid, name, search_text)
                VALUES ('delete', old.rowid, old.name, old.search_text);
            END;

            CREATE TRIGGER IF NOT EXISTS current_state_au AFTER UPDATE ON current_state BEGIN
                INSERT INTO current_state_fts(current_state_fts, rowid, name, search_text)
                VALUES ('delete', old.rowid, old.name, old.search_text);
                INSERT INTO current_state_fts(rowid, name, search_text)
                VALUES (new.rowid, new.name, new.search_text);
            END;

            -- Short-term change log (append-only)
            CREATE TABLE IF NOT EXISTS change_log (
                change_id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp INTEGER NOT NULL,
                entity_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                action TEXT NOT NULL,
                version INTEGER NOT NULL,
                changed_fields_json TEXT NOT NULL DEFAULT '{}',
                previous_state_json TEXT,
                new_state_json TEXT NOT NULL,
                UNIQUE (entity_id, version)
            );

            CREATE INDEX IF NOT EXISTS idx_change_log_ts ON change_log(timestamp, change_id);
            CREATE INDEX IF NOT EXISTS idx_change_log_entity
                ON change_log(entity_id, timestamp, change_id);

            -- Long-term compressed history
            CREATE TABLE IF NOT EXISTS long_term_archive (
                archive_id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_id TEXT NOT NULL,
                period_day TEXT NOT NULL,
                period_start INTEGER NOT NULL,
                period_end INTEGER NOT NULL,
                compressed_payload BLOB NOT NULL,
                compression TEXT NOT NULL,
                compression_ratio REAL NOT NULL,
                change_count INTEGER NOT NULL,
                first_change_id INTEGER NOT NULL,
                last_change_id INTEGER NOT NULL,
                original_size INTEGER NOT NULL,
                compressed_size INTEGER NOT NULL,
                archived_at INTEGER NOT NULL,
                UNIQUE (entity_id, first_change_id)
            );

            CREATE INDEX IF NOT EXISTS idx_archive_period
                ON long_term_archive(period_start, period_end);
            CREATE INDEX IF NOT EXISTS idx_archive_entity ON long_term_archive(entity_id);

            -- Point-in-time snapshots
            CREATE TABLE IF NOT EXISTS snapshots (
                snapshot_id TEXT PRIMARY KEY,
                snapshot_type TEXT NOT NULL,
                description TEXT,
                snapshot_date INTEGER NOT NULL,
                entity_count INTEGER NOT NULL,
                size_bytes INTEGER NOT NULL,
                original_size INTEGER NOT NULL,
                checksum TEXT NOT NULL,
                compression TEXT NOT NULL,
                payload BLOB NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_snapshots_date ON snapshots(snapshot_date DESC);
            CREATE INDEX IF NOT EXISTS idx_snapshots_type ON snapshots(snapshot_type);
        """)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, int(time.time() * 1000)),
        )
