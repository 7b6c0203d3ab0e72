"""
Error types for the knowledge state store.

Taxonomy:
- ValidationError: bad input, rejected before anything is written
- ConcurrencyConflict: version check lost a race on the same entity
- ArchivalGroupError: one archive group failed, retried on the next run
- DecompressionError: an archive or snapshot payload is unreadable
- StoreInitializationError: stores could not be created (fatal at startup)

Absent entities and snapshots are not errors: lookups return None.

Invariants:
    - All errors inherit from KnowledgeStateError
    - Only StoreInitializationError is allowed to stop the process
"""

from __future__ import annotations

from typing import Any


class KnowledgeStateError(Exception):
    """Base exception for all knowledge state errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KB_STATE_ERROR"
        self.details = details or {}


class ValidationError(KnowledgeStateError):
    """Input failed validation.

    Raised when:
    - entity_id is missing or blank
    - entity type is unknown
    - search query or options are invalid
    """

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name


class ConcurrencyConflict(KnowledgeStateError):
    """A version check on an entity failed.

    The losing writer must re-read the entity and retry its upsert.
    """

    def __init__(
        self,
        entity_id: str,
        expected_version: int | None,
        actual_version: int,
    ) -> None:
        super().__init__(
            f"Version conflict on {entity_id}: "
            f"expected {expected_version}, found {actual_version}",
            code="CONCURRENCY_CONFLICT",
            details={
                "entity_id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class ArchivalGroupError(KnowledgeStateError):
    """Archiving one (entity, day) group failed."""

    def __init__(self, entity_id: str, day: str, reason: str) -> None:
        super().__init__(
            f"Failed to archive {entity_id} for {day}: {reason}",
            code="ARCHIVAL_GROUP_ERROR",
            details={"entity_id": entity_id, "day": day},
        )
        self.entity_id = entity_id
        self.day = day


class DecompressionError(KnowledgeStateError):
    """Compressed payload could not be decoded."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="DECOMPRESSION_ERROR")


class StoreInitializationError(KnowledgeStateError):
    """Stores could not be initialized."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STORE_INIT_ERROR")
