"""Per-device outbound delivery queue.

Every accepted change fans out into one queue item per target device.
Pulling is read-then-acknowledge: ``drain()`` never changes state, so a
client that crashes mid-pull simply pulls the same items again.

Failed deliveries are retried with exponential backoff until the retry
budget is spent; the item is then parked as ``Failed`` (a poison item) and
kept for diagnostics until an operator requeues or removes it.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from ..errors import DeliveryExhausted, NotFound
from ..models import ChangeEntry, Operation, QueueItem, QueueStatus, utcnow
from .database import (
    Database,
    from_db_json,
    from_db_time,
    to_db_json,
    to_db_time,
)

logger = logging.getLogger(__name__)

_FIELDS = (
    "id",
    "user_id",
    "target_device_id",
    "change_id",
    "entity_type",
    "entity_id",
    "version",
    "operation",
    "payload",
    "priority",
    "status",
    "retry_count",
    "error_message",
    "queued_at",
    "next_attempt_at",
    "delivered_at",
)
_COLUMNS = ", ".join(_FIELDS)
_Q_COLUMNS = ", ".join(f"q.{name}" for name in _FIELDS)

DEFAULT_MAX_RETRIES = 5


def _row_to_item(row: sqlite3.Row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        user_id=row["user_id"],
        target_device_id=row["target_device_id"],
        change_id=row["change_id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        version=row["version"],
        operation=Operation(row["operation"]),
        payload=from_db_json(row["payload"]),
        priority=row["priority"],
        status=QueueStatus(row["status"]),
        retry_count=row["retry_count"],
        error_message=row["error_message"],
        queued_at=from_db_time(row["queued_at"]),
        next_attempt_at=from_db_time(row["next_attempt_at"]),
        delivered_at=from_db_time(row["delivered_at"]),
    )


class SyncQueue:
    """Queue of changes awaiting acknowledgement by each target device."""

    def __init__(
        self,
        db: Database,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = 5.0,
        max_backoff_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the queue.

        Args:
            db: Shared database handle.
            max_retries: Failures allowed before an item is parked as Failed.
            backoff_seconds: Delay after the first failure; doubles each time.
            max_backoff_seconds: Upper bound for the retry delay.
            clock: Source of queue timestamps.
        """
        self._db = db
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock

    # ==================== Fan-out ====================

    def enqueue(
        self, change: ChangeEntry, target_devices: Iterable[str]
    ) -> list[QueueItem]:
        """Create one queue item per target device for a change.

        A (change, target) pair that is already queued is left alone.

        Returns:
            The newly created items.
        """
        now = self._clock()
        created: list[QueueItem] = []

        with self._db.transaction() as conn:
            for target in sorted(set(target_devices)):
                item = QueueItem(
                    id=str(uuid.uuid4()),
                    user_id=change.user_id,
                    target_device_id=target,
                    change_id=change.id,
                    entity_type=change.entity_type,
                    entity_id=change.entity_id,
                    version=change.version,
                    operation=change.operation,
                    payload=change.payload,
                    priority=change.operation.priority,
                    status=QueueStatus.QUEUED,
                    retry_count=0,
                    error_message=None,
                    queued_at=now,
                )
                cursor = conn.execute(
                    f"""
                    INSERT OR IGNORE INTO sync_queue ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.id,
                        item.user_id,
                        item.target_device_id,
                        item.change_id,
                        item.entity_type,
                        item.entity_id,
                        item.version,
                        item.operation.value,
                        to_db_json(item.payload),
                        item.priority,
                        item.status.value,
                        0,
                        None,
                        to_db_time(item.queued_at),
                        None,
                        None,
                    ),
                )
                if cursor.rowcount:
                    created.append(item)

        logger.debug(
            f"Fanned out {change.entity_type}/{change.entity_id} v{change.version} "
            f"to {len(created)} device(s)"
        )
        return created

    # ==================== Delivery ====================

    def drain(self, user_id: str, device_id: str, limit: int = 100) -> list[QueueItem]:
        """Get the items a device should apply next, without changing them.

        Only ``Queued`` items whose backoff has elapsed are returned, and
        nothing at all for an inactive device.

        Returns:
            Items ordered by priority (highest first), then queue time.
        """
        with self._db.read() as conn:
            cursor = conn.execute(
                f"""
                SELECT {_Q_COLUMNS}
                FROM sync_queue q
                JOIN device_registrations d ON d.id = q.target_device_id
                WHERE q.user_id = ? AND q.target_device_id = ?
                  AND q.status = ? AND d.is_active = 1
                  AND (q.next_attempt_at IS NULL OR q.next_attempt_at <= ?)
                ORDER BY q.priority DESC, q.queued_at ASC, q.version ASC, q.rowid ASC
                LIMIT ?
                """,
                (
                    user_id,
                    device_id,
                    QueueStatus.QUEUED.value,
                    to_db_time(self._clock()),
                    limit,
                ),
            )
            return [_row_to_item(row) for row in cursor]

    def get(self, item_id: str) -> QueueItem | None:
        with self._db.read() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM sync_queue WHERE id = ?", (item_id,)
            ).fetchone()
        return _row_to_item(row) if row else None

    def _require(self, item_id: str) -> QueueItem:
        item = self.get(item_id)
        if item is None:
            raise NotFound("queue item", item_id)
        return item

    def acknowledge(self, item_id: str) -> QueueItem:
        """Mark an item delivered. Acknowledging twice is a no-op.

        Raises:
            NotFound: Unknown queue item.
        """
        with self._db.transaction() as conn:
            item = self._require(item_id)
            if item.status == QueueStatus.DELIVERED:
                logger.debug(f"Queue item {item_id} already acknowledged")
                return item

            conn.execute(
                """
                UPDATE sync_queue
                SET status = ?, delivered_at = ?, next_attempt_at = NULL
                WHERE id = ?
                """,
                (QueueStatus.DELIVERED.value, to_db_time(self._clock()), item_id),
            )
            return self._require(item_id)

    def report_failure(self, item_id: str, error_message: str) -> QueueItem:
        """Record a failed delivery attempt.

        Returns:
            The updated item: still ``Queued`` with a later
            ``next_attempt_at``, or ``Failed`` once the retry budget is spent.

        Raises:
            NotFound: Unknown queue item.
            DeliveryExhausted: The item is already parked as failed.
        """
        with self._db.transaction() as conn:
            item = self._require(item_id)
            if item.status == QueueStatus.DELIVERED:
                logger.debug(f"Ignoring failure report for delivered item {item_id}")
                return item
            if item.status == QueueStatus.FAILED:
                raise DeliveryExhausted(item_id, item.retry_count)

            retry_count = item.retry_count + 1
            if retry_count > self.max_retries:
                conn.execute(
                    """
                    UPDATE sync_queue
                    SET status = ?, retry_count = ?, error_message = ?,
                        next_attempt_at = NULL
                    WHERE id = ?
                    """,
                    (QueueStatus.FAILED.value, retry_count, error_message, item_id),
                )
                logger.warning(
                    f"Queue item {item_id} for device {item.target_device_id} "
                    f"failed {retry_count} times, parked: {error_message}"
                )
            else:
                delay = self.backoff_delay(retry_count)
                next_attempt = self._clock() + timedelta(seconds=delay)
                conn.execute(
                    """
                    UPDATE sync_queue
                    SET status = ?, retry_count = ?, error_message = ?,
                        next_attempt_at = ?
                    WHERE id = ?
                    """,
                    (
                        QueueStatus.QUEUED.value,
                        retry_count,
                        error_message,
                        to_db_time(next_attempt),
                        item_id,
                    ),
                )
                logger.info(
                    f"Queue item {item_id} attempt {retry_count}/{self.max_retries} "
                    f"failed, retrying in {delay:.1f}s: {error_message}"
                )

            return self._require(item_id)

    def backoff_delay(self, retry_count: int) -> float:
        """Seconds to wait before the next attempt after ``retry_count`` failures."""
        if retry_count <= 0:
            return 0.0
        return min(
            self.backoff_seconds * (2 ** (retry_count - 1)),
            self.max_backoff_seconds,
        )

    # ==================== Operator recovery ====================

    def list_failed(
        self, user_id: str, device_id: str | None = None
    ) -> list[QueueItem]:
        """List parked items, optionally for one target device."""
        return self.list_items(user_id, device_id, status=QueueStatus.FAILED)

    def list_items(
        self,
        user_id: str,
        device_id: str | None = None,
        status: QueueStatus | None = None,
    ) -> list[QueueItem]:
        """List stored items regardless of device state, oldest first."""
        query = f"SELECT {_COLUMNS} FROM sync_queue WHERE user_id = ?"
        params: list[Any] = [user_id]
        if device_id is not None:
            query += " AND target_device_id = ?"
            params.append(device_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY queued_at ASC, rowid ASC"

        with self._db.read() as conn:
            return [_row_to_item(row) for row in conn.execute(query, params)]

    def requeue(self, item_id: str) -> QueueItem:
        """Give a parked item a fresh retry budget.

        Items that are not ``Failed`` are returned unchanged.

        Raises:
            NotFound: Unknown queue item.
        """
        with self._db.transaction() as conn:
            item = self._require(item_id)
            if item.status != QueueStatus.FAILED:
                return item

            conn.execute(
                """
                UPDATE sync_queue
                SET status = ?, retry_count = 0, error_message = NULL,
                    next_attempt_at = NULL
                WHERE id = ?
                """,
                (QueueStatus.QUEUED.value, item_id),
            )
            logger.info(f"Requeued parked item {item_id}")
            return self._require(item_id)

    def remove(self, item_id: str) -> None:
        """Delete an item outright.

        Raises:
            NotFound: Unknown queue item.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
            if cursor.rowcount == 0:
                raise NotFound("queue item", item_id)

    def purge_delivered(self, older_than_days: int = 30) -> int:
        """Delete delivered items acknowledged more than N days ago.

        Returns:
            Number of items deleted.
        """
        cutoff = self._clock() - timedelta(days=older_than_days)
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM sync_queue
                WHERE status = ? AND delivered_at < ?
                """,
                (QueueStatus.DELIVERED.value, to_db_time(cutoff)),
            )

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(
                f"Purged {deleted} delivered queue items older than {older_than_days} days"
            )
        return deleted

    def purge_unregistered(self, older_than_days: int = 30) -> int:
        """Delete undelivered items queued more than N days ago for unregistered devices.

        Unregistered devices never pull again, so their items would stay
        queued for good.

        Returns:
            Number of items deleted.
        """
        cutoff = self._clock() - timedelta(days=older_than_days)
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM sync_queue
                WHERE status != ? AND queued_at < ?
                  AND target_device_id IN (
                      SELECT id FROM device_registrations WHERE is_active = 0
                  )
                """,
                (QueueStatus.DELIVERED.value, to_db_time(cutoff)),
            )

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(
                f"Purged {deleted} undelivered queue items of unregistered devices "
                f"older than {older_than_days} days"
            )
        return deleted

    # ==================== Counters ====================

    def pending_count_for_change(self, change_id: str) -> int:
        """Count a change's items that have not been delivered yet."""
        with self._db.read() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE change_id = ? AND status != ?",
                (change_id, QueueStatus.DELIVERED.value),
            )
            return cursor.fetchone()[0]

    def count_by_status(
        self, user_id: str, device_id: str | None = None
    ) -> dict[QueueStatus, int]:
        query = "SELECT status, COUNT(*) FROM sync_queue WHERE user_id = ?"
        params: list[Any] = [user_id]
        if device_id is not None:
            query += " AND target_device_id = ?"
            params.append(device_id)
        query += " GROUP BY status"

        counts = {status: 0 for status in QueueStatus}
        with self._db.read() as conn:
            for row in conn.execute(query, params):
                counts[QueueStatus(row[0])] = row[1]
        return counts
