"""
Query-result cache.

Search results are cached under a deterministic key built from the query
text and the search options. Entries expire after a TTL and are removed as
soon as an upsert touches an entity they reference or could now match.

Invariants:
    - Entries are immutable; put() and hit counting replace, never edit
    - Invalidation is a delete
    - A put() carrying a generation older than the last invalidation is
      dropped, so a search that raced an upsert cannot cache stale results

How to change safely:
    - Keep make_key() deterministic (sorted JSON); changing it only causes
      misses, never wrong hits
    - Anything that makes an entity searchable must be passed as
      search_text to invalidate_for_entity(); the new change record must be
      passed as change_text, serialized the same way history search reads it
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable

from ..state.current_store import query_terms
from ..state.models import Clock, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Cached search result.

    Attributes:
        key: Cache key
        query: Query text the result answers
        result: Cached result object
        created_at: When the entry was stored (Unix ms)
        hit_count: Times the entry was served
        entity_ids: Entities referenced by the result
        scans_history: Result includes change-log or archive matches
    """

    key: str
    query: str
    result: Any
    created_at: int
    hit_count: int = 0
    entity_ids: frozenset[str] = frozenset()
    scans_history: bool = False


def make_key(query: str, options: dict[str, Any] | None = None) -> str:
    """Deterministic cache key for a query and its options."""
    return json.dumps(
        {"query": query, "options": options or {}},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


class QueryCache:
    """In-process TTL cache for search results.

    Thread safety:
        All methods take an internal lock, so the cache can be shared by
        coroutines and executor threads.

    Example:
        >>> cache = QueryCache(ttl_seconds=3600)
        >>> generation = cache.generation
        >>> cache.put(key, "epoxy", result, {"P1"}, generation=generation)
        >>> cache.get(key)
    """

    def __init__(
        self,
        ttl_seconds: int = 3600,
        max_entries: int | None = 10000,
        clock: Clock = now_ms,
    ) -> None:
        self.ttl_ms = ttl_seconds * 1000
        self.max_entries = max_entries
        self.clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._generation = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0
        self._dropped_puts = 0

    @property
    def generation(self) -> int:
        """Invalidation counter; read it before computing a result to put."""
        with self._lock:
            return self._generation

    def get(self, key: str) -> Any | None:
        """Get a cached result, or None on a miss or an expired entry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._expired(entry):
                del self._entries[key]
                self._misses += 1
                return None

            self._hits += 1
            self._entries[key] = replace(entry, hit_count=entry.hit_count + 1)
            return entry.result

    def put(
        self,
        key: str,
        query: str,
        result: Any,
        entity_ids: set[str] | frozenset[str] | None = None,
        generation: int | None = None,
        scans_history: bool = False,
    ) -> bool:
        """Store a result.

        Args:
            key: Cache key from make_key()
            query: Query text
            result: Result to cache
            entity_ids: Entities referenced by the result
            generation: Value of `generation` read before the result was
                computed; the put is dropped if an invalidation happened since
            scans_history: Whether the result matched change records, which
                new or archived changes can affect

        Returns:
            True if the entry was stored
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                self._dropped_puts += 1
                return False

            if (
                self.max_entries is not None
                and key not in self._entries
                and len(self._entries) >= self.max_entries
            ):
                self._evict_oldest()

            self._entries[key] = CacheEntry(
                key=key,
                query=query,
                result=result,
                created_at=self.clock(),
                entity_ids=frozenset(entity_ids or ()),
                scans_history=scans_history,
            )
            return True

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest_key]
        self._evictions += 1

    def invalidate_for_entity(
        self,
        entity_id: str,
        search_text: str | None = None,
        change_text: str | None = None,
    ) -> int:
        """Remove entries that reference the entity or may now match it.

        An entry is removed when its result references entity_id, when any
        of its query terms occurs in search_text (the updated entity's
        searchable text), or, for entries that scanned change records, when
        its query occurs in change_text (the new change record, serialized
        the way history search matches it).

        Returns:
            Number of entries removed
        """
        haystack = (search_text or "").lower()
        changed = (change_text or "").lower()

        def affected(entry: CacheEntry) -> bool:
            if entity_id in entry.entity_ids:
                return True
            if haystack and any(t in haystack for t in query_terms(entry.query)):
                return True
            return bool(entry.scans_history and changed and entry.query.lower() in changed)

        removed = self._remove(affected)
        if removed:
            logger.debug(
                "Invalidated cached queries",
                extra={"entity_id": entity_id, "removed": removed},
            )
        return removed

    def invalidate_history(self) -> int:
        """Remove entries that matched change records.

        Called when records move from the change log to the archive.
        """
        removed = self._remove(lambda entry: entry.scans_history)
        if removed:
            logger.debug("Invalidated history queries", extra={"removed": removed})
        return removed

    def _remove(self, predicate: Callable[[CacheEntry], bool]) -> int:
        with self._lock:
            self._generation += 1
            stale = [key for key, entry in self._entries.items() if predicate(entry)]
            for key in stale:
                del self._entries[key]
            self._invalidations += len(stale)
        return len(stale)

    def invalidate_all(self) -> int:
        """Drop every entry."""
        with self._lock:
            self._generation += 1
            removed = len(self._entries)
            self._entries.clear()
            self._invalidations += removed

        logger.info("Query cache cleared", extra={"removed": removed})
        return removed

    def sweep(self) -> int:
        """Physically remove expired entries."""
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self._expired(entry)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def _expired(self, entry: CacheEntry) -> bool:
        return self.clock() - entry.created_at >= self.ttl_ms

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "total_hits": sum(e.hit_count for e in self._entries.values()),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0.0,
                "evictions": self._evictions,
                "invalidations": self._invalidations,
                "dropped_puts": self._dropped_puts,
                "ttl_seconds": self.ttl_ms // 1000,
            }
