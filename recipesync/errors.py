"""Exception taxonomy for the sync service."""

from typing import Any


class SyncError(Exception):
    """Base class for all sync service errors."""


class VersionConflict(SyncError):
    """A concurrent append claimed the version this writer was about to use.

    Transient: the coordinator retries the whole push a few times before
    surfacing it to the caller.
    """

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version race on {entity_type}/{entity_id} "
            f"(expected={expected_version}, actual={actual_version})"
        )


class BusinessConflict(SyncError):
    """Two devices changed the same entity from a common base version."""

    def __init__(self, conflict: Any):
        self.conflict = conflict
        super().__init__(
            f"Conflict {conflict.id} on {conflict.entity_type}/{conflict.entity_id}"
        )


class NotFound(SyncError):
    """Unknown (or no longer applicable) device, conflict or queue item."""

    def __init__(self, kind: str, identifier: str, reason: str | None = None):
        self.kind = kind
        self.identifier = identifier
        self.reason = reason
        message = f"{kind} {identifier} not found"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DeliveryExhausted(SyncError):
    """A queue item used up its retry budget and is parked as failed."""

    def __init__(self, queue_item_id: str, retry_count: int):
        self.queue_item_id = queue_item_id
        self.retry_count = retry_count
        super().__init__(
            f"Queue item {queue_item_id} exhausted delivery after {retry_count} attempts"
        )


class TransientStoreError(SyncError):
    """The backing store is temporarily unavailable (locked, busy, I/O)."""


class InvalidResolution(SyncError):
    """A conflict resolution request names an unknown policy or lacks data."""
