"""
State module - current-state store, change log, and the entity data model.

The current-state store and the change log share one SQLite transaction per
upsert: the new record, its version bump and its change record are written
together or not at all.

Invariants:
    - version is strictly increasing and gap-free per entity
    - Exactly one change record per successful upsert
    - Change records are immutable once written
"""

from .change_log import ChangeGroup, ChangeLog
from .current_store import CurrentStateStore, StateMatch, query_terms
from .diff import compact_state, compute_changes, content_hash
from .models import (
    ChangeAction,
    ChangeCursor,
    ChangeRecord,
    ChangeSummary,
    EntityRecord,
    EntityType,
    FieldChange,
    TimeRange,
    UpsertResult,
    now_ms,
)

__all__ = [
    "ChangeAction",
    "ChangeCursor",
    "ChangeGroup",
    "ChangeLog",
    "ChangeRecord",
    "ChangeSummary",
    "CurrentStateStore",
    "EntityRecord",
    "EntityType",
    "FieldChange",
    "StateMatch",
    "TimeRange",
    "UpsertResult",
    "compact_state",
    "compute_changes",
    "content_hash",
    "now_ms",
    "query_terms",
]
