"""
Archive module for the knowledge state store.

This module moves aged change records into compressed long-term storage:
- One archive row per (entity, UTC day)
- gzip-compressed JSON payloads with their compression ratio
- Retention cleanup by period end

Invariants:
    - Each change record is archived exactly once
    - Archive rows are immutable once written
"""

from .archiver import ArchivalResult, Archiver
from .long_term import ArchiveRecord, LongTermArchive

__all__ = ["Archiver", "ArchivalResult", "ArchiveRecord", "LongTermArchive"]
