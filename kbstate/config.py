"""
Configuration management for the knowledge state store.

All configuration is done via environment variables. Each concern has its
own settings section with an env prefix; ServerConfig aggregates them and
validates cross-section constraints.

    KB_RETENTION_*   retention windows (days)
    KB_CACHE_*       query cache
    KB_STORAGE_*     SQLite location and tuning
    KB_ARCHIVER_*    archival job
    KB_SNAPSHOT_*    snapshot job
    KB_CLEANUP_*     retention cleanup job
    KB_MANAGER_*     upsert retries, history paging
    KB_LOG_*         logging

Invariants:
    - All settings have sensible defaults for local development
    - Invalid values fail at startup with ValueError, never at first use

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Cross-section rules belong in ServerConfig.validate()
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from pydantic import Field
from pydantic_settings import BaseSettings

from .codec import SUPPORTED_ALGORITHMS

logger = logging.getLogger(__name__)


class RetentionConfig(BaseSettings):
    """Retention windows for the three tiers."""

    compression_threshold_days: int = Field(
        default=30, description="Age in days before change records are archived"
    )
    short_term_retention_days: int = Field(
        default=90, description="Age in days after which unarchived records are overdue"
    )
    long_term_retention_days: int = Field(
        default=730, description="Age in days after which archive records are purged"
    )
    snapshot_retention_days: int = Field(
        default=180, description="Age in days after which non-manual snapshots are purged"
    )

    model_config = {"env_prefix": "KB_RETENTION_", "frozen": True}

    @classmethod
    def from_env(cls) -> RetentionConfig:
        return cls()


class CacheConfig(BaseSettings):
    """Query cache configuration."""

    ttl_seconds: int = Field(default=3600, description="Cache entry lifetime")
    max_entries: int = Field(default=10000, description="Maximum cached queries")

    model_config = {"env_prefix": "KB_CACHE_", "frozen": True}

    @classmethod
    def from_env(cls) -> CacheConfig:
        return cls()


class StorageConfig(BaseSettings):
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the SQLite database
        db_filename: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = Field(default="/var/lib/kbstate")
    db_filename: str = Field(default="knowledge_state.db")
    wal_mode: bool = Field(default=True)
    busy_timeout_ms: int = Field(default=5000)
    cache_size_pages: int = Field(default=-64000)  # 64MB

    model_config = {"env_prefix": "KB_STORAGE_", "frozen": True}

    @classmethod
    def from_env(cls) -> StorageConfig:
        return cls()


class ArchiverConfig(BaseSettings):
    """Archival job configuration."""

    enabled: bool = Field(default=True)
    interval_seconds: int = Field(default=86400, description="Interval between passes")
    batch_size: int = Field(default=100, description="Groups selected per batch")
    compression: str = Field(default="gzip", description="Compression algorithm (gzip, none)")

    model_config = {"env_prefix": "KB_ARCHIVER_", "frozen": True}

    @classmethod
    def from_env(cls) -> ArchiverConfig:
        return cls()


class SnapshotConfig(BaseSettings):
    """Snapshot job configuration."""

    enabled: bool = Field(default=True)
    interval_seconds: int = Field(default=86400, description="Interval between snapshots")
    batch_size: int = Field(default=500, description="Entities read per batch")
    compression: str = Field(default="gzip", description="Compression algorithm (gzip, none)")

    model_config = {"env_prefix": "KB_SNAPSHOT_", "frozen": True}

    @classmethod
    def from_env(cls) -> SnapshotConfig:
        return cls()


class CleanupConfig(BaseSettings):
    """Retention cleanup job configuration."""

    enabled: bool = Field(default=True)
    interval_seconds: int = Field(default=604800, description="Interval between cleanups")

    model_config = {"env_prefix": "KB_CLEANUP_", "frozen": True}

    @classmethod
    def from_env(cls) -> CleanupConfig:
        return cls()


class ManagerConfig(BaseSettings):
    """State manager configuration."""

    max_upsert_retries: int = Field(
        default=3, description="Read-modify-write retries after a lost version race"
    )
    history_page_size: int = Field(default=500, description="Change records per page")

    model_config = {"env_prefix": "KB_MANAGER_", "frozen": True}

    @classmethod
    def from_env(cls) -> ManagerConfig:
        return cls()


class ObservabilityConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    model_config = {"env_prefix": "KB_", "frozen": True}

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        return cls()


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.
    """

    retention: RetentionConfig = field(default_factory=RetentionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    archiver: ArchiverConfig = field(default_factory=ArchiverConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    manager: ManagerConfig = field(default_factory=ManagerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            retention=RetentionConfig.from_env(),
            cache=CacheConfig.from_env(),
            storage=StorageConfig.from_env(),
            archiver=ArchiverConfig.from_env(),
            snapshot=SnapshotConfig.from_env(),
            cleanup=CleanupConfig.from_env(),
            manager=ManagerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        positive = {
            "KB_RETENTION_COMPRESSION_THRESHOLD_DAYS": self.retention.compression_threshold_days,
            "KB_RETENTION_SHORT_TERM_RETENTION_DAYS": self.retention.short_term_retention_days,
            "KB_RETENTION_LONG_TERM_RETENTION_DAYS": self.retention.long_term_retention_days,
            "KB_RETENTION_SNAPSHOT_RETENTION_DAYS": self.retention.snapshot_retention_days,
            "KB_CACHE_TTL_SECONDS": self.cache.ttl_seconds,
            "KB_CACHE_MAX_ENTRIES": self.cache.max_entries,
            "KB_ARCHIVER_INTERVAL_SECONDS": self.archiver.interval_seconds,
            "KB_ARCHIVER_BATCH_SIZE": self.archiver.batch_size,
            "KB_SNAPSHOT_INTERVAL_SECONDS": self.snapshot.interval_seconds,
            "KB_SNAPSHOT_BATCH_SIZE": self.snapshot.batch_size,
            "KB_CLEANUP_INTERVAL_SECONDS": self.cleanup.interval_seconds,
            "KB_MANAGER_HISTORY_PAGE_SIZE": self.manager.history_page_size,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        if self.manager.max_upsert_retries < 0:
            raise ValueError("KB_MANAGER_MAX_UPSERT_RETRIES must not be negative")

        threshold = self.retention.compression_threshold_days
        if self.retention.short_term_retention_days < threshold:
            raise ValueError(
                "KB_RETENTION_SHORT_TERM_RETENTION_DAYS must be >= "
                "KB_RETENTION_COMPRESSION_THRESHOLD_DAYS"
            )
        if self.retention.long_term_retention_days < threshold:
            raise ValueError(
                "KB_RETENTION_LONG_TERM_RETENTION_DAYS must be >= "
                "KB_RETENTION_COMPRESSION_THRESHOLD_DAYS"
            )

        for name, algorithm in (
            ("KB_ARCHIVER_COMPRESSION", self.archiver.compression),
            ("KB_SNAPSHOT_COMPRESSION", self.snapshot.compression),
        ):
            if algorithm not in SUPPORTED_ALGORITHMS:
                raise ValueError(
                    f"Invalid {name} '{algorithm}'. Must be one of: "
                    + ", ".join(SUPPORTED_ALGORITHMS)
                )

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid KB_LOG_FORMAT '{self.observability.log_format}'. Must be json or text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created at startup."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "db_filename": self.storage.db_filename,
                "compression_threshold_days": self.retention.compression_threshold_days,
                "short_term_retention_days": self.retention.short_term_retention_days,
                "long_term_retention_days": self.retention.long_term_retention_days,
                "snapshot_retention_days": self.retention.snapshot_retention_days,
                "cache_ttl_seconds": self.cache.ttl_seconds,
                "archiver_enabled": self.archiver.enabled,
                "snapshot_enabled": self.snapshot.enabled,
                "cleanup_enabled": self.cleanup.enabled,
                "log_level": self.observability.log_level,
            },
        )
