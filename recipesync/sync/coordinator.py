"""Sync coordinator: push, pull, acknowledge and conflict resolution.

A push runs through ``Idle -> Pushing -> Detecting -> (Conflict | Accepted)
-> FanningOut -> Idle``. Everything between taking the entity-key lock and
committing happens in one store transaction, so a change is either in the
log together with its queue fan-out, or not at all.

Two kinds of failure are retried here:
- ``VersionConflict``: another writer took the version between detection
  and append. The whole push is re-run a few times.
- ``TransientStoreError``: the store is locked or unavailable. The whole
  operation is re-run with exponential backoff.
A detected business conflict is a result, never retried.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, TypeVar

from ..config import SyncConfig
from ..errors import (
    BusinessConflict,
    InvalidResolution,
    NotFound,
    TransientStoreError,
    VersionConflict,
)
from ..models import (
    ChangeEntry,
    Conflict,
    DeviceRegistration,
    Operation,
    PendingChange,
    PushResult,
    QueueItem,
    QueueStatus,
    SyncStats,
    utcnow,
)
from ..store import ChangeLog, ConflictStore, Database, DeviceRegistry, SyncQueue
from .conflict_detector import ConflictDetector
from .locks import KeyedLock
from .notifier import Notifier, NullNotifier
from .resolution import MANUAL, create_policy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Origin recorded on change log entries written by conflict resolution.
SERVER_ORIGIN = "server"

Notification = tuple[str, dict[str, Any]]


class SessionState(str, Enum):
    """States of a single push."""

    IDLE = "Idle"
    PUSHING = "Pushing"
    DETECTING = "Detecting"
    CONFLICT = "Conflict"
    ACCEPTED = "Accepted"
    FANNING_OUT = "FanningOut"


@dataclass
class PushSession:
    """Tracks one push through its states."""

    device_id: str
    entity_type: str
    entity_id: str
    state: SessionState = SessionState.IDLE
    history: list[SessionState] = field(default_factory=list)

    def advance(self, state: SessionState) -> None:
        logger.debug(
            f"push {self.entity_type}/{self.entity_id} from {self.device_id}: "
            f"{self.state.value} -> {state.value}"
        )
        self.history.append(self.state)
        self.state = state


class SyncCoordinator:
    """Orchestrates push and pull cycles over the shared sync store."""

    def __init__(
        self,
        db: Database,
        change_log: ChangeLog,
        conflicts: ConflictStore,
        queue: SyncQueue,
        devices: DeviceRegistry,
        notifier: Notifier | None = None,
        locks: KeyedLock | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the coordinator.

        Args:
            db: Database the components share; used to scope transactions.
            change_log: Versioned change history.
            conflicts: Conflict store.
            queue: Delivery queue.
            devices: Device registry.
            notifier: Real-time "pull now" port. Defaults to a no-op.
            locks: Per-entity-key locks, shared by every coordinator in the
                process.
            config: Retry and policy settings.
            clock: Source of server timestamps.
            sleep: Used between store retries.

        Raises:
            InvalidResolution: ``auto_resolve`` is set with an unknown or
                manual ``conflict_policy``.
        """
        self._db = db
        self._log = change_log
        self._conflicts = conflicts
        self._queue = queue
        self._devices = devices
        self._detector = ConflictDetector(change_log)
        self._notifier = notifier or NullNotifier()
        self._locks = locks or KeyedLock()
        self.config = config or SyncConfig()
        self._clock = clock
        self._sleep = sleep

        if self.config.auto_resolve:
            policy = create_policy(self.config.conflict_policy)
            if policy.name == MANUAL:
                raise InvalidResolution(
                    "auto_resolve needs an automatic conflict_policy, not manual"
                )

    @classmethod
    def create(
        cls,
        db: Database,
        config: SyncConfig | None = None,
        notifier: Notifier | None = None,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "SyncCoordinator":
        """Build a coordinator and its store components over one database."""
        config = config or SyncConfig()
        return cls(
            db=db,
            change_log=ChangeLog(db, clock=clock),
            conflicts=ConflictStore(db, clock=clock),
            queue=SyncQueue(
                db,
                max_retries=config.max_delivery_retries,
                backoff_seconds=config.delivery_backoff_seconds,
                max_backoff_seconds=config.max_delivery_backoff_seconds,
                clock=clock,
            ),
            devices=DeviceRegistry(db, clock=clock),
            notifier=notifier,
            locks=locks,
            config=config,
            clock=clock,
            sleep=sleep,
        )

    @property
    def change_log(self) -> ChangeLog:
        return self._log

    @property
    def conflicts(self) -> ConflictStore:
        return self._conflicts

    @property
    def queue(self) -> SyncQueue:
        return self._queue

    @property
    def devices(self) -> DeviceRegistry:
        return self._devices

    # ==================== Push ====================

    def push(
        self,
        user_id: str,
        device_id: str,
        entity_type: str,
        entity_id: str,
        operation: Operation | str,
        payload: Any,
        client_timestamp: datetime,
        known_base_version: int,
        raise_on_conflict: bool = False,
    ) -> PushResult:
        """Ingest one change from a device.

        Args:
            raise_on_conflict: Raise ``BusinessConflict`` instead of
                returning a ``Conflicted`` result.

        Returns:
            ``Accepted(version)`` when the change was appended and fanned
            out (or was already appended by an earlier attempt of the same
            push), ``Conflicted(conflict_id)`` when another device's change
            got there first.

        Raises:
            BusinessConflict: Conflict detected and ``raise_on_conflict`` set.
            NotFound: Unknown device, device of another user, or inactive.
            VersionConflict: Version races persisted through every retry.
            TransientStoreError: The store stayed unavailable.
        """
        pending = PendingChange(
            user_id=user_id,
            device_id=device_id,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=Operation(operation),
            payload=payload,
            client_timestamp=client_timestamp,
        )

        result, notifications, conflict = self._with_retries(
            "push",
            lambda: self._with_version_retry(
                lambda: self._push_once(pending, known_base_version)
            ),
        )
        self._send(notifications)

        if conflict is not None:
            if self.config.auto_resolve and not conflict.is_resolved:
                self._auto_resolve(conflict)
            if raise_on_conflict:
                raise BusinessConflict(conflict)

        return result

    def _push_once(
        self, pending: PendingChange, known_base_version: int
    ) -> tuple[PushResult, list[Notification], Conflict | None]:
        session = PushSession(pending.device_id, pending.entity_type, pending.entity_id)

        with self._locks.hold(pending.key):
            with self._db.transaction():
                session.advance(SessionState.PUSHING)
                self._require_active_device(pending.user_id, pending.device_id)

                replay = self._find_replay(pending, known_base_version)
                if replay is not None:
                    logger.info(
                        f"Replayed push of {pending.entity_type}/{pending.entity_id} "
                        f"v{replay.version} from {pending.device_id}"
                    )
                    session.advance(SessionState.IDLE)
                    return PushResult.accepted(replay, replayed=True), [], None

                session.advance(SessionState.DETECTING)
                outcome = self._detector.check(pending, known_base_version)

                if outcome.conflict:
                    session.advance(SessionState.CONFLICT)
                    earlier = self._find_recorded_conflict(pending, known_base_version)
                    if earlier is not None:
                        logger.info(
                            f"Repeated stale push of {pending.entity_type}/{pending.entity_id} "
                            f"from {pending.device_id}, already conflict {earlier.id}"
                        )
                        session.advance(SessionState.IDLE)
                        return PushResult.conflicted(earlier), [], earlier

                    conflict = self._record_conflict(
                        pending, known_base_version, outcome.with_entry
                    )
                    notifications = [
                        (pending.device_id, _conflict_summary(conflict, "conflict_detected"))
                    ]
                    session.advance(SessionState.IDLE)
                    return PushResult.conflicted(conflict), notifications, conflict

                session.advance(SessionState.ACCEPTED)
                entry = self._log.append(
                    pending.user_id,
                    pending.device_id,
                    pending.entity_type,
                    pending.entity_id,
                    pending.operation,
                    pending.payload,
                    pending.client_timestamp,
                    expected_version=outcome.current_version,
                )

                session.advance(SessionState.FANNING_OUT)
                targets = self._fan_out(entry, exclude_device_id=pending.device_id)

        session.advance(SessionState.IDLE)
        logger.info(
            f"Accepted {entry.entity_type}/{entry.entity_id} v{entry.version} "
            f"from {entry.origin_device_id}, queued for {len(targets)} device(s)"
        )
        summary = _change_summary(entry)
        return PushResult.accepted(entry), [(t, summary) for t in targets], None

    def _find_replay(
        self, pending: PendingChange, known_base_version: int
    ) -> ChangeEntry | None:
        """Find the entry an earlier attempt of this very push created."""
        candidate = self._log.get_version(
            pending.user_id,
            pending.entity_type,
            pending.entity_id,
            known_base_version + 1,
        )
        if (
            candidate is not None
            and candidate.origin_device_id == pending.device_id
            and candidate.operation == pending.operation
            and candidate.payload == pending.payload
        ):
            return candidate
        return None

    def _find_recorded_conflict(
        self, pending: PendingChange, known_base_version: int
    ) -> Conflict | None:
        """Find the conflict an earlier attempt of this very stale push recorded."""
        for conflict in reversed(
            self._conflicts.list_for_entity(pending.entity_type, pending.entity_id)
        ):
            if (
                conflict.user_id == pending.user_id
                and conflict.device2_id == pending.device_id
                and conflict.base_version == known_base_version
                and conflict.device2_data == pending.payload
            ):
                return conflict
        return None

    def _record_conflict(
        self,
        pending: PendingChange,
        known_base_version: int,
        existing: ChangeEntry,
    ) -> Conflict:
        base_entry = None
        if known_base_version > 0:
            base_entry = self._log.get_version(
                pending.user_id,
                pending.entity_type,
                pending.entity_id,
                known_base_version,
            )
        now = self._clock()

        conflict = Conflict(
            id=str(uuid.uuid4()),
            user_id=pending.user_id,
            entity_type=pending.entity_type,
            entity_id=pending.entity_id,
            device1_id=existing.origin_device_id,
            device2_id=pending.device_id,
            server_data=base_entry.payload if base_entry else existing.payload,
            device1_data=existing.payload,
            device2_data=pending.payload,
            device1_timestamp=existing.server_timestamp,
            device2_timestamp=now,
            base_version=known_base_version,
            server_version=existing.version,
            detected_at=now,
        )
        return self._conflicts.record(conflict)

    def _fan_out(self, entry: ChangeEntry, exclude_device_id: str | None) -> list[str]:
        targets = [
            device.id
            for device in self._devices.list_active(entry.user_id)
            if device.id != exclude_device_id
        ]
        self._queue.enqueue(entry, targets)
        return targets

    # ==================== Pull / Ack ====================

    def pull(self, user_id: str, device_id: str, limit: int | None = None) -> list[QueueItem]:
        """Get the next queued items for a device and record the sync time.

        Raises:
            NotFound: Unknown device or device of another user.
            ValueError: ``limit`` below 1.
        """
        if limit is None:
            limit = self.config.default_pull_limit
        if limit < 1:
            raise ValueError(f"Pull limit must be at least 1, got {limit}")

        def _pull() -> list[QueueItem]:
            device = self._require_device(user_id, device_id)
            items = self._queue.drain(user_id, device_id, limit)
            if device.is_active:
                self._devices.touch_last_sync(device_id, self._clock())
            return items

        items = self._with_retries("pull", _pull)
        logger.debug(f"Device {device_id} pulled {len(items)} item(s)")
        return items

    def ack(self, queue_item_id: str) -> QueueItem:
        """Acknowledge a delivered item. Safe to repeat.

        Once every target acknowledged a change, its log entry is flagged
        as synced.

        Raises:
            NotFound: Unknown queue item.
        """

        def _ack() -> QueueItem:
            with self._db.transaction():
                item = self._queue.acknowledge(queue_item_id)
                if self._queue.pending_count_for_change(item.change_id) == 0:
                    self._log.mark_synced(item.change_id)
                return item

        return self._with_retries("ack", _ack)

    def report_failure(self, queue_item_id: str, error_message: str) -> QueueItem:
        """Record that a device could not apply an item.

        Raises:
            NotFound: Unknown queue item.
            DeliveryExhausted: The item was already parked as failed.
        """
        item = self._with_retries(
            "report_failure",
            lambda: self._queue.report_failure(queue_item_id, error_message),
        )
        if item.status == QueueStatus.FAILED:
            logger.warning(
                f"Delivery of {item.entity_type}/{item.entity_id} v{item.version} "
                f"to {item.target_device_id} exhausted after {item.retry_count} attempts"
            )
        return item

    def catch_up(
        self,
        user_id: str,
        device_id: str,
        since: datetime | None,
        limit: int | None = None,
    ) -> list[ChangeEntry]:
        """Changes from the user's other devices since a point in time.

        Independent of the queue, for devices that missed fan-out.
        """
        if limit is not None and limit < 1:
            raise ValueError(f"Catch-up limit must be at least 1, got {limit}")
        self._require_device(user_id, device_id)
        return self._with_retries(
            "catch_up",
            lambda: self._log.get_changes_since(user_id, device_id, since, limit),
        )

    def get_history(
        self, user_id: str, entity_type: str, entity_id: str
    ) -> list[ChangeEntry]:
        return self._log.get_history(entity_type, entity_id, user_id=user_id)

    # ==================== Devices ====================

    def register_device(
        self,
        user_id: str,
        device_name: str,
        device_type: str,
        os_version: str,
        app_version: str,
    ) -> DeviceRegistration:
        return self._with_retries(
            "register_device",
            lambda: self._devices.register(
                user_id, device_name, device_type, os_version, app_version
            ),
        )

    def unregister_device(self, device_id: str) -> DeviceRegistration:
        return self._with_retries(
            "unregister_device", lambda: self._devices.unregister(device_id)
        )

    def list_devices(
        self, user_id: str, include_inactive: bool = False
    ) -> list[DeviceRegistration]:
        return self._devices.list_devices(user_id, include_inactive=include_inactive)

    def _require_device(self, user_id: str, device_id: str) -> DeviceRegistration:
        device = self._devices.get(device_id)
        if device is None or device.user_id != user_id:
            raise NotFound("device", device_id)
        return device

    def _require_active_device(self, user_id: str, device_id: str) -> DeviceRegistration:
        device = self._require_device(user_id, device_id)
        if not device.is_active:
            raise NotFound("device", device_id, "device is unregistered")
        return device

    # ==================== Conflicts ====================

    def list_conflicts(self, user_id: str) -> list[Conflict]:
        return self._conflicts.list_unresolved(user_id)

    def get_conflict(self, conflict_id: str) -> Conflict:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise NotFound("conflict", conflict_id)
        return conflict

    def resolve_conflict(
        self,
        conflict_id: str,
        resolution: str,
        resolved_data: Any,
        resolved_by: str,
    ) -> Conflict:
        """Resolve a conflict with a named policy.

        When the chosen data differs from what the log currently holds, a
        new entry (origin ``server``) carries it to every active device.
        If the log accepted newer changes since the conflict was detected,
        nothing is written; the choice is recorded and a follow-up conflict
        between the newest entry and the chosen data is opened instead.

        Raises:
            NotFound: Unknown or already resolved conflict.
            InvalidResolution: Unknown policy, or manual without data.
        """
        conflict = self.get_conflict(conflict_id)
        policy = create_policy(resolution)
        data = policy.resolve(conflict, resolved_data)

        resolved, notifications = self._with_retries(
            "resolve_conflict",
            lambda: self._with_version_retry(
                lambda: self._resolve_once(conflict, policy.name, data, resolved_by)
            ),
        )
        self._send(notifications)
        return resolved

    def _resolve_once(
        self, conflict: Conflict, resolution: str, data: Any, resolved_by: str
    ) -> tuple[Conflict, list[Notification]]:
        key = (conflict.user_id, conflict.entity_type, conflict.entity_id)
        notifications: list[Notification] = []
        entry = None
        follow_up = None

        with self._locks.hold(key):
            with self._db.transaction():
                resolved = self._conflicts.resolve(
                    conflict.id, resolution, data, resolved_by
                )
                latest = self._log.get_latest_version(
                    conflict.entity_type, conflict.entity_id, user_id=conflict.user_id
                )
                current_version = latest.version if latest else 0

                changed = latest is None or latest.payload != data
                if changed and latest is not None and current_version != conflict.server_version:
                    follow_up = self._record_follow_up(resolved, latest, data)
                elif changed:
                    if data is None:
                        operation = Operation.DELETE
                    elif latest is None:
                        operation = Operation.CREATE
                    else:
                        operation = Operation.UPDATE
                    entry = self._log.append(
                        conflict.user_id,
                        SERVER_ORIGIN,
                        conflict.entity_type,
                        conflict.entity_id,
                        operation,
                        data,
                        self._clock(),
                        expected_version=current_version,
                    )
                    targets = self._fan_out(entry, exclude_device_id=None)
                    summary = _change_summary(entry)
                    notifications.extend((t, summary) for t in targets)

        summary = _conflict_summary(resolved, "conflict_resolved")
        for device_id in (resolved.device1_id, resolved.device2_id):
            if device_id != SERVER_ORIGIN:
                notifications.append((device_id, summary))

        if entry is not None:
            logger.info(
                f"Conflict {conflict.id} resolution written as "
                f"{entry.entity_type}/{entry.entity_id} v{entry.version}"
            )
        if follow_up is not None:
            logger.warning(
                f"Conflict {conflict.id} resolved against v{conflict.server_version} but "
                f"{conflict.entity_type}/{conflict.entity_id} is at v{follow_up.server_version}, "
                f"opened conflict {follow_up.id}"
            )
            summary = _conflict_summary(follow_up, "conflict_detected")
            devices = dict.fromkeys(
                (follow_up.device1_id, conflict.device1_id, conflict.device2_id)
            )
            notifications.extend(
                (device_id, summary) for device_id in devices if device_id != SERVER_ORIGIN
            )
        return resolved, notifications

    def _record_follow_up(
        self, resolved: Conflict, latest: ChangeEntry, data: Any
    ) -> Conflict:
        """Open a conflict between the newest entry and a resolution made against an older one."""
        now = self._clock()
        follow_up = Conflict(
            id=str(uuid.uuid4()),
            user_id=resolved.user_id,
            entity_type=resolved.entity_type,
            entity_id=resolved.entity_id,
            device1_id=latest.origin_device_id,
            device2_id=SERVER_ORIGIN,
            server_data=resolved.device1_data,
            device1_data=latest.payload,
            device2_data=data,
            device1_timestamp=latest.server_timestamp,
            device2_timestamp=now,
            base_version=resolved.server_version,
            server_version=latest.version,
            detected_at=now,
        )
        return self._conflicts.record(follow_up)

    def _auto_resolve(self, conflict: Conflict) -> None:
        try:
            self.resolve_conflict(
                conflict.id, self.config.conflict_policy, None, SERVER_ORIGIN
            )
        except (InvalidResolution, NotFound, VersionConflict, TransientStoreError) as e:
            # The conflict stays unresolved and visible to the user.
            logger.warning(f"Automatic resolution of conflict {conflict.id} failed: {e}")

    # ==================== Queue recovery ====================

    def list_failed(self, user_id: str, device_id: str | None = None) -> list[QueueItem]:
        return self._queue.list_failed(user_id, device_id)

    def requeue(self, queue_item_id: str) -> QueueItem:
        item = self._with_retries("requeue", lambda: self._queue.requeue(queue_item_id))
        if item.status == QueueStatus.QUEUED:
            self._send([(item.target_device_id, _item_summary(item))])
        return item

    def purge_delivered(self, older_than_days: int | None = None) -> int:
        days = older_than_days or self.config.delivered_retention_days
        return self._with_retries("purge", lambda: self._queue.purge_delivered(days))

    def purge_unregistered(self, older_than_days: int | None = None) -> int:
        days = older_than_days or self.config.delivered_retention_days
        return self._with_retries(
            "purge_unregistered", lambda: self._queue.purge_unregistered(days)
        )

    # ==================== Stats ====================

    def get_stats(self, user_id: str, device_id: str | None = None) -> SyncStats:
        counts = self._queue.count_by_status(user_id, device_id)

        if device_id is not None:
            device = self._require_device(user_id, device_id)
            last_sync_at = device.last_sync_at
        else:
            synced = [
                d.last_sync_at
                for d in self._devices.list_devices(user_id)
                if d.last_sync_at is not None
            ]
            last_sync_at = max(synced) if synced else None

        return SyncStats(
            user_id=user_id,
            device_id=device_id,
            total_changes=self._log.count(user_id),
            pending_items=counts[QueueStatus.QUEUED] + counts[QueueStatus.DELIVERING],
            failed_items=counts[QueueStatus.FAILED],
            unresolved_conflicts=self._conflicts.count_unresolved(user_id),
            last_sync_at=last_sync_at,
        )

    # ==================== Retry helpers ====================

    def _with_version_retry(self, func: Callable[[], T]) -> T:
        attempts = max(1, self.config.version_retry_attempts)
        for attempt in range(attempts):
            try:
                return func()
            except VersionConflict as e:
                if attempt == attempts - 1:
                    logger.error(f"Version race not settled after {attempts} attempts: {e}")
                    raise
                logger.warning(f"{e}, attempt {attempt + 1}/{attempts}")
        raise AssertionError("unreachable")

    def _with_retries(self, name: str, func: Callable[[], T]) -> T:
        """Run ``func``, retrying transient store errors with exponential backoff."""
        attempts = max(1, self.config.store_retry_attempts)
        backoff = self.config.store_retry_backoff_seconds

        for attempt in range(attempts):
            try:
                return func()
            except TransientStoreError as e:
                if attempt == attempts - 1:
                    logger.error(f"{name}: store unavailable after {attempts} attempts: {e}")
                    raise
                logger.warning(
                    f"{name}: store unavailable ({e}), attempt {attempt + 1}/{attempts}"
                )
                self._sleep(backoff)
                backoff *= 2
        raise AssertionError("unreachable")

    def _send(self, notifications: list[Notification]) -> None:
        for device_id, summary in notifications:
            try:
                self._notifier.notify(device_id, summary)
            except Exception as e:
                logger.warning(f"Notification to device {device_id} failed: {e}")


def _change_summary(entry: ChangeEntry) -> dict[str, Any]:
    return {
        "event": "change",
        "userId": entry.user_id,
        "entityType": entry.entity_type,
        "entityId": entry.entity_id,
        "version": entry.version,
        "operation": entry.operation.value,
    }


def _conflict_summary(conflict: Conflict, event: str) -> dict[str, Any]:
    return {
        "event": event,
        "userId": conflict.user_id,
        "conflictId": conflict.id,
        "entityType": conflict.entity_type,
        "entityId": conflict.entity_id,
        "resolution": conflict.resolution,
    }


def _item_summary(item: QueueItem) -> dict[str, Any]:
    return {
        "event": "change",
        "userId": item.user_id,
        "entityType": item.entity_type,
        "entityId": item.entity_id,
        "version": item.version,
        "operation": item.operation.value,
    }
