"""
Storage Layer - Registry snapshots.

This module provides:
    - SnapshotStore: Atomic JSON file holding the latest snapshot
    - RegistrySnapshot: Registrations plus the poller cursor
    - RegistrationRecord: Persisted form of a MarketRegistration
    - SnapshotError: Raised for unreadable snapshot files

Usage:
    from deepbook_buyback.storage import RegistrySnapshot, SnapshotStore

    store = SnapshotStore("state/registry.json")
    snapshot = store.load()
    if snapshot:
        registry.load_records(snapshot.registrations())
        poller.restore_cursor(snapshot.cursor)
"""

from .snapshot import (
    RegistrationRecord,
    RegistrySnapshot,
    SnapshotError,
    SnapshotStore,
)

__all__ = [
    "RegistrationRecord",
    "RegistrySnapshot",
    "SnapshotError",
    "SnapshotStore",
]
