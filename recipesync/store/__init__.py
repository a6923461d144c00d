"""SQLite-backed store for sync state.

Provides the four shared components of the sync service:
- ChangeLog: append-only versioned history
- ConflictStore: detected conflicts and their resolutions
- SyncQueue: per-device delivery queue
- DeviceRegistry: devices per user
"""

from .change_log import ChangeLog
from .conflict_store import ConflictStore
from .database import Database
from .device_registry import DeviceRegistry
from .sync_queue import SyncQueue

__all__ = [
    "ChangeLog",
    "ConflictStore",
    "Database",
    "DeviceRegistry",
    "SyncQueue",
]
