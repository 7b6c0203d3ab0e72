"""
Storage module for the knowledge state store.

All persisted tiers (current state, change log, long-term archive,
snapshots) live in one SQLite database so that cross-tier writes can
share a transaction.
"""

from .database import Database

__all__ = ["Database"]
