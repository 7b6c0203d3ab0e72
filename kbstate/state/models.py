"""
Data model for the knowledge state store.

Entities are the unit of knowledge; change records are immutable facts
describing one mutation of one entity. Both serialize to plain JSON
dictionaries for storage in SQLite and for compression into archives and
snapshots.

Invariants:
    - entity_id is non-empty and never changes
    - relationships are a set: stored sorted and de-duplicated
    - ChangeRecord instances are never mutated after creation
    - All timestamps are Unix milliseconds (UTC)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from ..errors import ValidationError

Clock = Callable[[], int]

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


class EntityType(Enum):
    """Discriminator for knowledge entities."""

    PRODUCT = "product"
    DOCUMENT = "document"
    OTHER = "other"

    @classmethod
    def parse(cls, value: EntityType | str) -> EntityType:
        if isinstance(value, EntityType):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Unknown entity type '{value}'. Must be one of: product, document, other",
                field_name="type",
            )


class ChangeAction(Enum):
    """Kind of mutation recorded in the change log."""

    CREATED = "created"
    MODIFIED = "modified"


@dataclass
class EntityRecord:
    """A knowledge entity.

    Attributes:
        entity_id: Globally unique identifier
        type: Entity discriminator
        name: Display name
        content: Original payload plus derived searchable text
        metadata: Keywords, tags, category, free-form attributes
        relationships: Related entity ids (weak references)
        version: Starts at 1, +1 per successful mutation (0 = never stored)
        last_modified: Last mutation timestamp (Unix ms)
        change_count: Number of recorded mutations
        created_at: First upsert timestamp (Unix ms)
    """

    entity_id: str
    type: EntityType = EntityType.OTHER
    name: str = ""
    content: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    relationships: list[str] = field(default_factory=list)
    version: int = 0
    last_modified: int = 0
    change_count: int = 0
    created_at: int = 0

    def __post_init__(self) -> None:
        self.type = EntityType.parse(self.type)
        self.relationships = sorted({str(r) for r in self.relationships if r})

    def diffable_fields(self) -> dict[str, Any]:
        """Fields owned by the writer, compared when computing changes."""
        return {
            "type": self.type.value,
            "name": self.name,
            "content": self.content,
            "metadata": self.metadata,
            "relationships": list(self.relationships),
        }

    def search_text(self) -> str:
        """Flattened text of content and metadata used by the search index."""
        parts: list[str] = []
        _collect_text(self.content, parts)
        _collect_text(self.metadata, parts)
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "type": self.type.value,
            "name": self.name,
            "content": self.content,
            "metadata": self.metadata,
            "relationships": list(self.relationships),
            "version": self.version,
            "last_modified": self.last_modified,
            "change_count": self.change_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityRecord:
        return cls(
            entity_id=data.get("entity_id", ""),
            type=data.get("type", EntityType.OTHER.value),
            name=data.get("name") or "",
            content=dict(data.get("content") or {}),
            metadata=dict(data.get("metadata") or {}),
            relationships=list(data.get("relationships") or []),
            version=int(data.get("version", 0)),
            last_modified=int(data.get("last_modified", 0)),
            change_count=int(data.get("change_count", 0)),
            created_at=int(data.get("created_at", 0)),
        )


def _collect_text(value: Any, parts: list[str]) -> None:
    if isinstance(value, str):
        if value:
            parts.append(value)
    elif isinstance(value, dict):
        for item in value.values():
            _collect_text(item, parts)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            _collect_text(item, parts)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parts.append(str(value))


@dataclass(frozen=True)
class FieldChange:
    """Old and new value of one changed field (None when absent)."""

    old: Any = None
    new: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"old": self.old, "new": self.new}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldChange:
        return cls(old=data.get("old"), new=data.get("new"))


@dataclass(frozen=True)
class ChangeSummary:
    """Typed diff between two versions of an entity.

    Attributes:
        action: created or modified
        changed_fields: Dotted field path -> FieldChange
    """

    action: ChangeAction
    changed_fields: dict[str, FieldChange] = field(default_factory=dict)

    @property
    def fields(self) -> list[str]:
        return sorted(self.changed_fields)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "changed_fields": {k: v.to_dict() for k, v in self.changed_fields.items()},
        }


@dataclass(frozen=True)
class ChangeRecord:
    """Immutable record of one entity mutation.

    Attributes:
        timestamp: When the mutation committed (Unix ms)
        entity_id: Mutated entity
        entity_type: Entity type at mutation time
        action: created or modified
        version: Entity version produced by this mutation
        changed_fields: Dotted field path -> FieldChange
        previous_state: Compact digest before the change (None on create)
        new_state: Compact digest after the change
        change_id: Log-assigned id (None until appended)
    """

    timestamp: int
    entity_id: str
    entity_type: str
    action: ChangeAction
    version: int
    changed_fields: dict[str, FieldChange]
    previous_state: dict[str, Any] | None
    new_state: dict[str, Any]
    change_id: int | None = None

    def with_id(self, change_id: int) -> ChangeRecord:
        return replace(self, change_id=change_id)

    @property
    def summary(self) -> ChangeSummary:
        return ChangeSummary(action=self.action, changed_fields=dict(self.changed_fields))

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_id": self.change_id,
            "timestamp": self.timestamp,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "action": self.action.value,
            "version": self.version,
            "changed_fields": {k: v.to_dict() for k, v in self.changed_fields.items()},
            "previous_state": self.previous_state,
            "new_state": self.new_state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeRecord:
        return cls(
            change_id=data.get("change_id"),
            timestamp=int(data["timestamp"]),
            entity_id=data["entity_id"],
            entity_type=data["entity_type"],
            action=ChangeAction(data["action"]),
            version=int(data["version"]),
            changed_fields={
                k: FieldChange.from_dict(v) for k, v in (data.get("changed_fields") or {}).items()
            },
            previous_state=data.get("previous_state"),
            new_state=data["new_state"],
        )


@dataclass(frozen=True)
class ChangeCursor:
    """Position in the change log, used to resume a paginated read."""

    timestamp: int
    change_id: int

    @classmethod
    def after_record(cls, record: ChangeRecord) -> ChangeCursor:
        if record.change_id is None:
            raise ValueError("Record has not been appended to the log")
        return cls(timestamp=record.timestamp, change_id=record.change_id)


@dataclass(frozen=True)
class TimeRange:
    """Inclusive time window in Unix ms. None means unbounded."""

    start: int | None = None
    end: int | None = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValidationError("time range start is after end", field_name="time_range")

    @classmethod
    def last_days(cls, days: int, now: int | None = None) -> TimeRange:
        end = now if now is not None else now_ms()
        return cls(start=end - days * DAY_MS, end=end)

    def contains(self, ts: int) -> bool:
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts > self.end:
            return False
        return True

    def to_dict(self) -> dict[str, int | None]:
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a successful upsert."""

    entity: EntityRecord
    change: ChangeRecord

    @property
    def version(self) -> int:
        return self.entity.version

    @property
    def change_summary(self) -> ChangeSummary:
        return self.change.summary
