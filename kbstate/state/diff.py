"""
Field-level diffing and compact state digests.

compute_changes compares the writer-owned fields of two entity versions.
Nested dictionaries (content, metadata) are walked recursively and reported
with dotted paths; any other value is compared as a whole.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from .models import ChangeAction, ChangeSummary, EntityRecord, FieldChange

_MISSING = object()


def compute_changes(previous: EntityRecord | None, current: EntityRecord) -> ChangeSummary:
    """Diff two versions of an entity.

    Args:
        previous: Stored version, or None when the entity is new
        current: Incoming version

    Returns:
        ChangeSummary with one FieldChange per differing path
    """
    new_fields = current.diffable_fields()

    if previous is None:
        return ChangeSummary(
            action=ChangeAction.CREATED,
            changed_fields={name: FieldChange(None, value) for name, value in new_fields.items()},
        )

    changes: dict[str, FieldChange] = {}
    old_fields = previous.diffable_fields()
    for name in new_fields:
        _diff_value(old_fields.get(name, _MISSING), new_fields[name], name, changes)

    return ChangeSummary(action=ChangeAction.MODIFIED, changed_fields=changes)


def _diff_value(old: Any, new: Any, path: str, out: dict[str, FieldChange]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in sorted(set(old) | set(new), key=str):
            _diff_value(old.get(key, _MISSING), new.get(key, _MISSING), f"{path}.{key}", out)
        return

    if old is _MISSING and new is _MISSING:
        return
    if old is not _MISSING and new is not _MISSING and _canonical(old) == _canonical(new):
        return

    out[path] = FieldChange(
        old=None if old is _MISSING else old,
        new=None if new is _MISSING else new,
    )


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(entity: EntityRecord) -> str:
    """SHA-256 of the canonical JSON of the full record."""
    return hashlib.sha256(_canonical(entity.to_dict()).encode("utf-8")).hexdigest()


def compact_state(entity: EntityRecord) -> dict[str, Any]:
    """Compact projection of an entity kept in change records.

    Large content is dropped; content_hash allows integrity verification
    against a full copy (current state or snapshot).
    """
    return {
        "entity_id": entity.entity_id,
        "type": entity.type.value,
        "name": entity.name,
        "version": entity.version,
        "last_modified": entity.last_modified,
        "metadata": entity.metadata,
        "relationships": list(entity.relationships),
        "content_hash": content_hash(entity),
    }
