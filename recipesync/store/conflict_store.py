"""Persistence for detected sync conflicts.

A conflict is resolved at most once. Corrections after that go through a
new change log entry, never through rewriting the conflict row.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable

from ..errors import NotFound
from ..models import Conflict, ConflictStatus, utcnow
from .database import (
    Database,
    from_db_json,
    from_db_time,
    to_db_json,
    to_db_time,
)

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, user_id, entity_type, entity_id, device1_id, device2_id,
    server_data, device1_data, device2_data, device1_timestamp,
    device2_timestamp, base_version, server_version, status, resolution,
    resolved_data, detected_at, resolved_at, resolved_by
"""


def _row_to_conflict(row: sqlite3.Row) -> Conflict:
    return Conflict(
        id=row["id"],
        user_id=row["user_id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        device1_id=row["device1_id"],
        device2_id=row["device2_id"],
        server_data=from_db_json(row["server_data"]),
        device1_data=from_db_json(row["device1_data"]),
        device2_data=from_db_json(row["device2_data"]),
        device1_timestamp=from_db_time(row["device1_timestamp"]),
        device2_timestamp=from_db_time(row["device2_timestamp"]),
        base_version=row["base_version"],
        server_version=row["server_version"],
        status=ConflictStatus(row["status"]),
        resolution=row["resolution"],
        resolved_data=from_db_json(row["resolved_data"]),
        detected_at=from_db_time(row["detected_at"]),
        resolved_at=from_db_time(row["resolved_at"]),
        resolved_by=row["resolved_by"],
    )


class ConflictStore:
    """Stores conflicts until they are resolved, and keeps them afterwards."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._clock = clock

    def record(self, conflict: Conflict) -> Conflict:
        """Persist a newly detected conflict.

        ``detected_at`` is filled in from the store clock when unset.
        """
        if conflict.detected_at is None:
            conflict.detected_at = self._clock()

        with self._db.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO sync_conflicts ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conflict.id,
                    conflict.user_id,
                    conflict.entity_type,
                    conflict.entity_id,
                    conflict.device1_id,
                    conflict.device2_id,
                    to_db_json(conflict.server_data),
                    to_db_json(conflict.device1_data),
                    to_db_json(conflict.device2_data),
                    to_db_time(conflict.device1_timestamp),
                    to_db_time(conflict.device2_timestamp),
                    conflict.base_version,
                    conflict.server_version,
                    conflict.status.value,
                    conflict.resolution,
                    to_db_json(conflict.resolved_data),
                    to_db_time(conflict.detected_at),
                    to_db_time(conflict.resolved_at),
                    conflict.resolved_by,
                ),
            )

        logger.info(
            f"Recorded conflict {conflict.id} on {conflict.entity_type}/{conflict.entity_id} "
            f"between {conflict.device1_id} and {conflict.device2_id}"
        )
        return conflict

    def get(self, conflict_id: str) -> Conflict | None:
        with self._db.read() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM sync_conflicts WHERE id = ?",
                (conflict_id,),
            ).fetchone()
        return _row_to_conflict(row) if row else None

    def list_unresolved(self, user_id: str) -> list[Conflict]:
        """List a user's unresolved conflicts, oldest first."""
        with self._db.read() as conn:
            cursor = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM sync_conflicts
                WHERE user_id = ? AND status = ?
                ORDER BY detected_at ASC
                """,
                (user_id, ConflictStatus.UNRESOLVED.value),
            )
            return [_row_to_conflict(row) for row in cursor]

    def list_for_entity(self, entity_type: str, entity_id: str) -> list[Conflict]:
        """List every conflict ever recorded for one entity."""
        with self._db.read() as conn:
            cursor = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM sync_conflicts
                WHERE entity_type = ? AND entity_id = ?
                ORDER BY detected_at ASC
                """,
                (entity_type, entity_id),
            )
            return [_row_to_conflict(row) for row in cursor]

    def count_unresolved(self, user_id: str) -> int:
        with self._db.read() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM sync_conflicts WHERE user_id = ? AND status = ?",
                (user_id, ConflictStatus.UNRESOLVED.value),
            )
            return cursor.fetchone()[0]

    def resolve(
        self,
        conflict_id: str,
        resolution: str,
        resolved_data: Any,
        resolved_by: str,
    ) -> Conflict:
        """Resolve a conflict once.

        Raises:
            NotFound: Unknown id, or the conflict is already resolved.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_conflicts
                SET status = ?, resolution = ?, resolved_data = ?,
                    resolved_at = ?, resolved_by = ?
                WHERE id = ? AND status = ?
                """,
                (
                    ConflictStatus.RESOLVED.value,
                    resolution,
                    to_db_json(resolved_data),
                    to_db_time(self._clock()),
                    resolved_by,
                    conflict_id,
                    ConflictStatus.UNRESOLVED.value,
                ),
            )
            if cursor.rowcount == 0:
                existing = self.get(conflict_id)
                reason = "already resolved" if existing else None
                raise NotFound("conflict", conflict_id, reason)

            resolved = self.get(conflict_id)

        logger.info(
            f"Resolved conflict {conflict_id} with '{resolution}' by {resolved_by}"
        )
        return resolved
