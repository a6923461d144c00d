"""HTTP client used by devices to sync with the server."""

from .sync_client import DeviceSyncClient, OutboxEntry, SyncResult, SyncStatus

__all__ = ["DeviceSyncClient", "OutboxEntry", "SyncResult", "SyncStatus"]
