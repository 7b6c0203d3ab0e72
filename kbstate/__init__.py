"""
kbstate - Tiered state store for knowledge entities.

This package maintains the evolving state of knowledge entities (products,
documents, derived facts) across three retention tiers:
- Current state: exactly one live record per entity, versioned
- Change log: short-term, append-only per-entity deltas
- Long-term archive: compressed per-entity, per-day bundles of old changes

plus point-in-time snapshots and a query-result cache.

Architecture:
    ┌─────────────┐     ┌──────────────────────┐
    │   Writer    │────▶│ KnowledgeStateManager│
    │   (ETL)     │     │   upsert / search    │
    └─────────────┘     └──────────┬───────────┘
                                   │  one SQLite transaction
                   ┌───────────────┼────────────────┐
                   ▼               ▼                ▼
             ┌───────────┐   ┌───────────┐    ┌───────────┐
             │  Current  │   │  Change   │    │   Query   │
             │   State   │   │    Log    │    │   Cache   │
             └─────┬─────┘   └─────┬─────┘    └───────────┘
                   │               │
                   ▼               ▼
             ┌───────────┐   ┌───────────┐
             │Snapshotter│   │ Archiver  │
             └─────┬─────┘   └─────┬─────┘
                   ▼               ▼
             ┌───────────┐   ┌───────────┐
             │ snapshots │   │ long-term │
             │  (gzip)   │   │  (gzip)   │
             └───────────┘   └───────────┘

Invariants:
    - At most one current record per entity_id
    - version is strictly increasing and gap-free per entity
    - Every mutation writes exactly one change record in the same transaction
    - Archived change ids plus remaining log ids reconstruct full history

How to change safely:
    - Schema changes must be additive (new columns with defaults)
    - Never change the archive/snapshot payload layout without a version field
    - Keep the archive insert and change-log delete in one transaction

Version: see _version.py.
"""

from ._version import __version__
from .config import ServerConfig
from .errors import (
    ArchivalGroupError,
    ConcurrencyConflict,
    DecompressionError,
    KnowledgeStateError,
    StoreInitializationError,
    ValidationError,
)
from .manager import CleanupResult, KnowledgeStateManager
from .search import SearchOptions, SearchResult
from .state import EntityRecord, EntityType, TimeRange, UpsertResult

__all__ = [
    "__version__",
    "ArchivalGroupError",
    "CleanupResult",
    "ConcurrencyConflict",
    "DecompressionError",
    "EntityRecord",
    "EntityType",
    "KnowledgeStateError",
    "KnowledgeStateManager",
    "SearchOptions",
    "SearchResult",
    "ServerConfig",
    "StoreInitializationError",
    "TimeRange",
    "UpsertResult",
    "ValidationError",
]
