"""Data model shared by the store, the coordinator and the HTTP API.

Python attributes are snake_case; ``to_dict()`` produces the camelCase
shape used on the wire and ``from_dict()`` reads it back.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Operation(str, Enum):
    """Kind of mutation carried by a change."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"

    @property
    def priority(self) -> int:
        """Delivery priority: destructive operations propagate first."""
        return _PRIORITIES[self]


_PRIORITIES = {
    Operation.CREATE: 1,
    Operation.UPDATE: 2,
    Operation.DELETE: 3,
}


class ConflictStatus(str, Enum):
    UNRESOLVED = "Unresolved"
    RESOLVED = "Resolved"


class QueueStatus(str, Enum):
    QUEUED = "Queued"
    DELIVERING = "Delivering"
    FAILED = "Failed"
    DELIVERED = "Delivered"


class PushStatus(str, Enum):
    ACCEPTED = "Accepted"
    CONFLICTED = "Conflicted"


@dataclass(frozen=True)
class ChangeEntry:
    """One versioned mutation to one entity, as recorded in the change log."""

    id: str
    user_id: str
    origin_device_id: str
    entity_type: str
    entity_id: str
    version: int
    operation: Operation
    payload: Any
    client_timestamp: datetime
    server_timestamp: datetime
    synced: bool = False

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.user_id, self.entity_type, self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "originDeviceId": self.origin_device_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "version": self.version,
            "operation": self.operation.value,
            "payload": self.payload,
            "clientTimestamp": _iso(self.client_timestamp),
            "serverTimestamp": _iso(self.server_timestamp),
            "synced": self.synced,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEntry":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            origin_device_id=data["originDeviceId"],
            entity_type=data["entityType"],
            entity_id=data["entityId"],
            version=data["version"],
            operation=Operation(data["operation"]),
            payload=data.get("payload"),
            client_timestamp=_parse(data["clientTimestamp"]),
            server_timestamp=_parse(data["serverTimestamp"]),
            synced=data.get("synced", False),
        )


@dataclass(frozen=True)
class PendingChange:
    """An incoming change that has not been accepted yet."""

    user_id: str
    device_id: str
    entity_type: str
    entity_id: str
    operation: Operation
    payload: Any
    client_timestamp: datetime

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.user_id, self.entity_type, self.entity_id)


@dataclass
class Conflict:
    """Two devices edited the same entity without seeing each other's change.

    ``device1`` is the origin of the change already in the log, ``device2``
    the device whose push was rejected. ``server_data`` is the snapshot both
    of them started from, when the log still has it.
    """

    id: str
    user_id: str
    entity_type: str
    entity_id: str
    device1_id: str
    device2_id: str
    server_data: Any
    device1_data: Any
    device2_data: Any
    device1_timestamp: datetime
    device2_timestamp: datetime
    base_version: int
    server_version: int
    status: ConflictStatus = ConflictStatus.UNRESOLVED
    resolution: str | None = None
    resolved_data: Any = None
    detected_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status == ConflictStatus.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "device1Id": self.device1_id,
            "device2Id": self.device2_id,
            "serverData": self.server_data,
            "device1Data": self.device1_data,
            "device2Data": self.device2_data,
            "device1Timestamp": _iso(self.device1_timestamp),
            "device2Timestamp": _iso(self.device2_timestamp),
            "baseVersion": self.base_version,
            "serverVersion": self.server_version,
            "status": self.status.value,
            "resolution": self.resolution,
            "resolvedData": self.resolved_data,
            "detectedAt": _iso(self.detected_at),
            "resolvedAt": _iso(self.resolved_at),
            "resolvedBy": self.resolved_by,
        }


@dataclass
class QueueItem:
    """One change awaiting acknowledgement by one target device."""

    id: str
    user_id: str
    target_device_id: str
    change_id: str
    entity_type: str
    entity_id: str
    version: int
    operation: Operation
    payload: Any
    priority: int
    status: QueueStatus
    retry_count: int
    error_message: str | None
    queued_at: datetime
    next_attempt_at: datetime | None = None
    delivered_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "targetDeviceId": self.target_device_id,
            "changeId": self.change_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "version": self.version,
            "operation": self.operation.value,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "errorMessage": self.error_message,
            "queuedAt": _iso(self.queued_at),
            "nextAttemptAt": _iso(self.next_attempt_at),
            "deliveredAt": _iso(self.delivered_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueItem":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            target_device_id=data["targetDeviceId"],
            change_id=data["changeId"],
            entity_type=data["entityType"],
            entity_id=data["entityId"],
            version=data["version"],
            operation=Operation(data["operation"]),
            payload=data.get("payload"),
            priority=data["priority"],
            status=QueueStatus(data["status"]),
            retry_count=data.get("retryCount", 0),
            error_message=data.get("errorMessage"),
            queued_at=_parse(data["queuedAt"]),
            next_attempt_at=_parse(data.get("nextAttemptAt")),
            delivered_at=_parse(data.get("deliveredAt")),
        )


@dataclass
class DeviceRegistration:
    """A client device belonging to a user."""

    id: str
    user_id: str
    device_name: str
    device_type: str
    os_version: str
    app_version: str
    registered_at: datetime
    last_sync_at: datetime | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "deviceName": self.device_name,
            "deviceType": self.device_type,
            "osVersion": self.os_version,
            "appVersion": self.app_version,
            "registeredAt": _iso(self.registered_at),
            "lastSyncAt": _iso(self.last_sync_at),
            "isActive": self.is_active,
        }


@dataclass(frozen=True)
class PushResult:
    """Outcome of a push: accepted at a version, or conflicted."""

    status: PushStatus
    version: int | None = None
    change_id: str | None = None
    conflict_id: str | None = None
    replayed: bool = False

    @classmethod
    def accepted(
        cls, entry: ChangeEntry, replayed: bool = False
    ) -> "PushResult":
        return cls(
            status=PushStatus.ACCEPTED,
            version=entry.version,
            change_id=entry.id,
            replayed=replayed,
        )

    @classmethod
    def conflicted(cls, conflict: Conflict) -> "PushResult":
        return cls(status=PushStatus.CONFLICTED, conflict_id=conflict.id)

    def to_dict(self) -> dict[str, Any]:
        if self.status == PushStatus.CONFLICTED:
            return {"status": self.status.value, "conflictId": self.conflict_id}
        return {
            "status": self.status.value,
            "version": self.version,
            "changeId": self.change_id,
            "replayed": self.replayed,
        }


@dataclass
class SyncStats:
    """Per-user (optionally per-device) sync counters."""

    user_id: str
    device_id: str | None = None
    total_changes: int = 0
    pending_items: int = 0
    failed_items: int = 0
    unresolved_conflicts: int = 0
    last_sync_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "deviceId": self.device_id,
            "totalChanges": self.total_changes,
            "pendingItems": self.pending_items,
            "failedItems": self.failed_items,
            "unresolvedConflicts": self.unresolved_conflicts,
            "lastSyncAt": _iso(self.last_sync_at),
        }
