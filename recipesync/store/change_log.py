"""Append-only, per-entity versioned change log.

Each ``(user_id, entity_type, entity_id)`` key owns a gap-free version
sequence starting at 1. The UNIQUE index on that key plus ``version`` is the
backstop against two writers claiming the same version.
"""

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Callable

from ..errors import VersionConflict
from ..models import ChangeEntry, Operation, utcnow
from .database import (
    Database,
    from_db_json,
    from_db_time,
    to_db_json,
    to_db_time,
)

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, user_id, origin_device_id, entity_type, entity_id, version,
    operation, payload, client_timestamp, server_timestamp, synced
"""


def _row_to_entry(row: sqlite3.Row) -> ChangeEntry:
    return ChangeEntry(
        id=row["id"],
        user_id=row["user_id"],
        origin_device_id=row["origin_device_id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        version=row["version"],
        operation=Operation(row["operation"]),
        payload=from_db_json(row["payload"]),
        client_timestamp=from_db_time(row["client_timestamp"]),
        server_timestamp=from_db_time(row["server_timestamp"]),
        synced=bool(row["synced"]),
    )


class ChangeLog:
    """Versioned history of accepted changes; the source of truth for sync."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        """Initialize the change log.

        Args:
            db: Shared database handle.
            clock: Source of server timestamps.
        """
        self._db = db
        self._clock = clock

    def append(
        self,
        user_id: str,
        device_id: str,
        entity_type: str,
        entity_id: str,
        operation: Operation,
        payload: Any,
        client_timestamp: datetime,
        expected_version: int | None = None,
    ) -> ChangeEntry:
        """Append a change as the next version of its entity.

        Args:
            user_id: Owner of the entity.
            device_id: Device the change originated on.
            entity_type: Entity type tag, e.g. "Recipe".
            entity_id: Entity identifier.
            operation: Create, Update or Delete.
            payload: Serializable entity snapshot.
            client_timestamp: When the device made the change.
            expected_version: Current version the caller based its decision
                on. If set and the log has moved on, the append is refused.

        Returns:
            The created ChangeEntry.

        Raises:
            VersionConflict: Another writer appended to this key first.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                SELECT MAX(version) FROM change_log
                WHERE user_id = ? AND entity_type = ? AND entity_id = ?
                """,
                (user_id, entity_type, entity_id),
            )
            current = cursor.fetchone()[0] or 0

            if expected_version is not None and current != expected_version:
                raise VersionConflict(
                    entity_type, entity_id, expected_version, current
                )

            entry = ChangeEntry(
                id=str(uuid.uuid4()),
                user_id=user_id,
                origin_device_id=device_id,
                entity_type=entity_type,
                entity_id=entity_id,
                version=current + 1,
                operation=Operation(operation),
                payload=payload,
                client_timestamp=client_timestamp,
                server_timestamp=self._clock(),
                synced=False,
            )

            try:
                conn.execute(
                    f"""
                    INSERT INTO change_log ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.user_id,
                        entry.origin_device_id,
                        entry.entity_type,
                        entry.entity_id,
                        entry.version,
                        entry.operation.value,
                        to_db_json(entry.payload),
                        to_db_time(entry.client_timestamp),
                        to_db_time(entry.server_timestamp),
                        0,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise VersionConflict(
                    entity_type, entity_id, current, current + 1
                ) from e

        logger.debug(
            f"Appended {entity_type}/{entity_id} v{entry.version} from {device_id}"
        )
        return entry

    def get_history(
        self, entity_type: str, entity_id: str, user_id: str | None = None
    ) -> list[ChangeEntry]:
        """Get every version of an entity, oldest first.

        Args:
            entity_type: Entity type tag.
            entity_id: Entity identifier.
            user_id: Restrict to one user's copy of the entity.

        Returns:
            List of ChangeEntry objects in ascending version order.
        """
        query = f"SELECT {_COLUMNS} FROM change_log WHERE entity_type = ? AND entity_id = ?"
        params: list[Any] = [entity_type, entity_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY version ASC, server_timestamp ASC"

        with self._db.read() as conn:
            return [_row_to_entry(row) for row in conn.execute(query, params)]

    def get_latest_version(
        self, entity_type: str, entity_id: str, user_id: str | None = None
    ) -> ChangeEntry | None:
        """Get the newest entry for an entity, or None if it was never seen."""
        query = f"SELECT {_COLUMNS} FROM change_log WHERE entity_type = ? AND entity_id = ?"
        params: list[Any] = [entity_type, entity_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY version DESC, server_timestamp DESC LIMIT 1"

        with self._db.read() as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_entry(row) if row else None

    def get_version(
        self, user_id: str, entity_type: str, entity_id: str, version: int
    ) -> ChangeEntry | None:
        """Get one specific version of an entity."""
        with self._db.read() as conn:
            row = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM change_log
                WHERE user_id = ? AND entity_type = ? AND entity_id = ? AND version = ?
                """,
                (user_id, entity_type, entity_id, version),
            ).fetchone()
        return _row_to_entry(row) if row else None

    def get_entry(self, change_id: str) -> ChangeEntry | None:
        with self._db.read() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM change_log WHERE id = ?", (change_id,)
            ).fetchone()
        return _row_to_entry(row) if row else None

    def get_changes_since(
        self,
        user_id: str,
        exclude_device_id: str | None,
        since: datetime | None,
        limit: int | None = None,
    ) -> list[ChangeEntry]:
        """Get a user's changes made after a point in time.

        Catch-up path for devices that missed queue fan-out, e.g. a device
        registered after the changes were accepted.

        Args:
            user_id: Owner of the changes.
            exclude_device_id: Skip changes that originated on this device.
            since: Only changes with a later server timestamp. None for all.
            limit: Maximum entries to return.

        Returns:
            List of ChangeEntry objects, oldest first.
        """
        query = f"SELECT {_COLUMNS} FROM change_log WHERE user_id = ?"
        params: list[Any] = [user_id]
        if exclude_device_id is not None:
            query += " AND origin_device_id != ?"
            params.append(exclude_device_id)
        if since is not None:
            query += " AND server_timestamp > ?"
            params.append(to_db_time(since))
        query += " ORDER BY server_timestamp ASC, version ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._db.read() as conn:
            return [_row_to_entry(row) for row in conn.execute(query, params)]

    def mark_synced(self, change_id: str) -> bool:
        """Set the legacy ``synced`` flag once every target acknowledged.

        Returns:
            True if the flag changed.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE change_log SET synced = 1 WHERE id = ? AND synced = 0",
                (change_id,),
            )
        return cursor.rowcount > 0

    def count(self, user_id: str | None = None) -> int:
        """Count entries, optionally for one user."""
        with self._db.read() as conn:
            if user_id is None:
                cursor = conn.execute("SELECT COUNT(*) FROM change_log")
            else:
                cursor = conn.execute(
                    "SELECT COUNT(*) FROM change_log WHERE user_id = ?", (user_id,)
                )
            return cursor.fetchone()[0]
