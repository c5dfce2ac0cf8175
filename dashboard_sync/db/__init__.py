"""Database utilities for the sync engine"""

from dashboard_sync.db.store import SyncStore, open_store

__all__ = ["SyncStore", "open_store"]
