"""
Tiered search coordinator.

Answers a query by fanning out over the retention tiers and merging the
results:

    1. Query cache          (return on hit)
    2. Current state        (FTS5 match, always)
    3. Change log           (substring scan, include_history)
    4. Long-term archive    (decompress + scan, include_long_term)

Invariants:
    - Every tier is capped at options.limit
    - Archive rows are filtered by time range before decompression
    - An unreadable archive row is logged and skipped; the query completes
    - Results computed before a concurrent invalidation are never cached
    - The cache holds its own copy of a result; callers get copies on hits

How to change safely:
    - New options must be part of SearchOptions.to_dict() so they reach the
      cache key
    - Keep tier tags stable; callers group results by them
"""

from __future__ import annotations

import json
import logging
import time
from copy import deepcopy
from dataclasses import dataclass, field, replace
from typing import Any

from ..archive.long_term import LongTermArchive
from ..cache.query_cache import QueryCache, make_key
from ..errors import DecompressionError, ValidationError
from ..state.change_log import ChangeLog
from ..state.current_store import CurrentStateStore, StateMatch
from ..state.models import ChangeRecord, TimeRange

logger = logging.getLogger(__name__)

SNIPPET_CONTEXT_CHARS = 50


@dataclass(frozen=True)
class SearchOptions:
    """Options for a tiered search.

    Attributes:
        include_history: Also scan the short-term change log
        include_long_term: Also scan decompressed archive records
        time_range: Window applied to the history and archive tiers
        limit: Maximum matches per tier
    """

    include_history: bool = False
    include_long_term: bool = False
    time_range: TimeRange | None = None
    limit: int = 50

    def to_dict(self) -> dict[str, Any]:
        return {
            "include_history": self.include_history,
            "include_long_term": self.include_long_term,
            "time_range": self.time_range.to_dict() if self.time_range else None,
            "limit": self.limit,
        }


@dataclass
class HistoryMatch:
    """Change-log record matching the query."""

    change: ChangeRecord
    tier: str = "short_term"

    def to_dict(self) -> dict[str, Any]:
        return {"tier": self.tier, "change": self.change.to_dict()}


@dataclass
class ArchiveMatch:
    """Archived change record matching the query.

    Attributes:
        archive_id: Archive row holding the change
        change: Decompressed change record
        snippets: Matched text with surrounding context
    """

    archive_id: int
    change: ChangeRecord
    snippets: list[str] = field(default_factory=list)
    tier: str = "long_term"

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "archive_id": self.archive_id,
            "change": self.change.to_dict(),
            "snippets": list(self.snippets),
        }


@dataclass
class SearchResult:
    """Merged result of a tiered search."""

    query: str
    current_matches: list[StateMatch] = field(default_factory=list)
    history_matches: list[HistoryMatch] = field(default_factory=list)
    archive_matches: list[ArchiveMatch] = field(default_factory=list)
    total_count: int = 0
    took_ms: float = 0.0
    cached: bool = False

    def entity_ids(self) -> set[str]:
        """Entities referenced anywhere in the result."""
        ids = {m.entity.entity_id for m in self.current_matches}
        ids.update(m.change.entity_id for m in self.history_matches)
        ids.update(m.change.entity_id for m in self.archive_matches)
        return ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "current_matches": [m.to_dict() for m in self.current_matches],
            "history_matches": [m.to_dict() for m in self.history_matches],
            "archive_matches": [m.to_dict() for m in self.archive_matches],
            "total_count": self.total_count,
            "took_ms": self.took_ms,
            "cached": self.cached,
        }


class TieredSearchCoordinator:
    """Fan-out/merge search over the cache and the three retention tiers.

    Example:
        >>> coordinator = TieredSearchCoordinator(store, log, archive, cache)
        >>> result = await coordinator.search(
        ...     "epoxy",
        ...     SearchOptions(include_history=True, time_range=TimeRange.last_days(7)),
        ... )
    """

    def __init__(
        self,
        current_store: CurrentStateStore,
        change_log: ChangeLog,
        archive: LongTermArchive,
        cache: QueryCache,
    ) -> None:
        self.current_store = current_store
        self.change_log = change_log
        self.archive = archive
        self.cache = cache

        self._searches = 0
        self._decompression_failures = 0

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchResult:
        """Search the tiers selected by options.

        Args:
            query: Free-text query
            options: Tier selection, time range and per-tier limit

        Returns:
            SearchResult with matches tagged by tier

        Raises:
            ValidationError: If the query is blank or limit < 1
        """
        options = options or SearchOptions()
        text = (query or "").strip()
        if not text:
            raise ValidationError("query must not be blank", field_name="query")
        if options.limit < 1:
            raise ValidationError("limit must be at least 1", field_name="limit")

        start = time.time()
        key = make_key(text, options.to_dict())

        cached = self.cache.get(key)
        if cached is not None:
            return replace(deepcopy(cached), cached=True, took_ms=_elapsed_ms(start))

        generation = self.cache.generation
        self._searches += 1

        result = SearchResult(query=text)
        result.current_matches = await self.current_store.search(text, limit=options.limit)

        if options.include_history:
            result.history_matches = await self._search_history(text, options)

        if options.include_long_term:
            result.archive_matches = await self._search_archive(text, options)

        result.total_count = (
            len(result.current_matches)
            + len(result.history_matches)
            + len(result.archive_matches)
        )
        result.took_ms = _elapsed_ms(start)

        self.cache.put(
            key,
            text,
            deepcopy(result),
            result.entity_ids(),
            generation=generation,
            scans_history=options.include_history or options.include_long_term,
        )

        logger.debug(
            "Search completed",
            extra={
                "query": text,
                "current": len(result.current_matches),
                "history": len(result.history_matches),
                "archive": len(result.archive_matches),
                "took_ms": result.took_ms,
            },
        )
        return result

    async def _search_history(self, query: str, options: SearchOptions) -> list[HistoryMatch]:
        needle = query.lower()
        matches: list[HistoryMatch] = []

        async for record in self.change_log.query_changes(time_range=options.time_range):
            if needle in change_text(record).lower():
                matches.append(HistoryMatch(change=record))
                if len(matches) >= options.limit:
                    break

        return matches

    async def _search_archive(self, query: str, options: SearchOptions) -> list[ArchiveMatch]:
        needle = query.lower()
        matches: list[ArchiveMatch] = []

        # Time-range filtering happens in SQL, before any payload is decompressed
        for archive in await self.archive.list_archives(time_range=options.time_range):
            try:
                changes = archive.changes()
            except DecompressionError as e:
                self._decompression_failures += 1
                logger.warning(
                    f"Skipping unreadable archive record: {e}",
                    extra={"archive_id": archive.archive_id, "entity_id": archive.entity_id},
                )
                continue

            for change in changes:
                if options.time_range is not None and not options.time_range.contains(
                    change.timestamp
                ):
                    continue

                snippets = extract_snippets(change_text(change), needle)
                if snippets:
                    matches.append(
                        ArchiveMatch(archive_id=archive.archive_id, change=change, snippets=snippets)
                    )
                    if len(matches) >= options.limit:
                        return matches

        return matches

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "searches": self._searches,
            "decompression_failures": self._decompression_failures,
        }


def extract_snippets(text: str, needle: str, context: int = SNIPPET_CONTEXT_CHARS) -> list[str]:
    """Every case-insensitive occurrence of needle with surrounding context."""
    snippets = []
    haystack = text.lower()
    pos = haystack.find(needle)
    while pos != -1 and needle:
        start = max(0, pos - context)
        end = min(len(text), pos + len(needle) + context)
        snippets.append(text[start:end])
        pos = haystack.find(needle, pos + len(needle))
    return snippets


def change_text(change: ChangeRecord) -> str:
    """Serialized change record that history and archive search match against."""
    return json.dumps(change.to_dict(), sort_keys=True, ensure_ascii=False)


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000, 3)
