"""Query-result cache with TTL expiry and write invalidation."""

from .query_cache import CacheEntry, QueryCache, make_key

__all__ = ["CacheEntry", "QueryCache", "make_key"]
