"""
Snapshot module for the knowledge state store.

This module handles compressed point-in-time copies of the current state:
- Scheduled snapshots from a background loop
- Manual snapshots on demand
- Retention cleanup that keeps manual snapshots

Invariants:
    - Only complete, consistent snapshots are stored
    - Snapshots include checksums for load-time validation
"""

from .snapshotter import MANUAL_SNAPSHOT, SCHEDULED_SNAPSHOT, SnapshotInfo, Snapshotter

__all__ = ["Snapshotter", "SnapshotInfo", "MANUAL_SNAPSHOT", "SCHEDULED_SNAPSHOT"]
