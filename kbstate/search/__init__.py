"""
Search module - tiered search over current state, history and archive.

Reads always check the query cache first; a miss fans out to the current
state and, when requested, the change log and the long-term archive.
"""

from .coordinator import (
    ArchiveMatch,
    HistoryMatch,
    SearchOptions,
    SearchResult,
    TieredSearchCoordinator,
    change_text,
    extract_snippets,
)

__all__ = [
    "ArchiveMatch",
    "HistoryMatch",
    "SearchOptions",
    "SearchResult",
    "TieredSearchCoordinator",
    "change_text",
    "extract_snippets",
]
