"""SQLite handle shared by the sync store components.

One connection per ``Database``, shared across request threads. The
connection runs in autocommit mode and ``transaction()`` issues explicit
``BEGIN IMMEDIATE``/``COMMIT``/``ROLLBACK``; nested ``transaction()`` calls
join the outermost one so a multi-step operation commits or rolls back as a
unit.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from ..errors import TransientStoreError

logger = logging.getLogger(__name__)

SCHEMA = """
-- Change log: append-only, versioned per (user, entity type, entity id)
CREATE TABLE IF NOT EXISTS change_log (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    origin_device_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL,
    client_timestamp TEXT NOT NULL,
    server_timestamp TEXT NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_change_log_version
    ON change_log(user_id, entity_type, entity_id, version);
CREATE INDEX IF NOT EXISTS idx_change_log_entity
    ON change_log(entity_type, entity_id, version);
CREATE INDEX IF NOT EXISTS idx_change_log_since
    ON change_log(user_id, server_timestamp);

-- Conflicts: recorded once, resolved once
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    device1_id TEXT NOT NULL,
    device2_id TEXT NOT NULL,
    server_data TEXT,
    device1_data TEXT,
    device2_data TEXT,
    device1_timestamp TEXT NOT NULL,
    device2_timestamp TEXT NOT NULL,
    base_version INTEGER NOT NULL,
    server_version INTEGER NOT NULL,
    status TEXT NOT NULL,
    resolution TEXT,
    resolved_data TEXT,
    detected_at TEXT NOT NULL,
    resolved_at TEXT,
    resolved_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_conflicts_user ON sync_conflicts(user_id, status);
CREATE INDEX IF NOT EXISTS idx_conflicts_entity ON sync_conflicts(entity_type, entity_id);

-- Delivery queue: one row per (change, target device)
CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    target_device_id TEXT NOT NULL,
    change_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL,
    priority INTEGER NOT NULL,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    queued_at TEXT NOT NULL,
    next_attempt_at TEXT,
    delivered_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_change_target
    ON sync_queue(change_id, target_device_id);
CREATE INDEX IF NOT EXISTS idx_queue_drain
    ON sync_queue(user_id, target_device_id, status, priority, queued_at);

-- Devices: soft-deleted via is_active
CREATE TABLE IF NOT EXISTS device_registrations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    device_name TEXT NOT NULL,
    device_type TEXT NOT NULL,
    os_version TEXT NOT NULL,
    app_version TEXT NOT NULL,
    registered_at TEXT NOT NULL,
    last_sync_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_devices_user ON device_registrations(user_id, is_active);
"""

_TRANSIENT_MARKERS = (
    "locked",
    "busy",
    "disk i/o",
    "unable to open",
)


def to_db_time(value: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO-8601 so text order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def to_db_json(value: Any) -> str:
    return json.dumps(value)


def from_db_json(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def is_transient(exc: sqlite3.OperationalError) -> bool:
    """True for operational errors that a retry may clear."""
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class Database:
    """SQLite connection, schema and transaction scope for the sync store."""

    def __init__(self, db_path: str | Path, busy_timeout_seconds: float = 5.0):
        """Initialize the database handle.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            busy_timeout_seconds: How long SQLite waits on a locked database.
        """
        if str(db_path) == ":memory:":
            self.db_path: Path | None = None
        else:
            self.db_path = Path(db_path).expanduser()
        self.busy_timeout_seconds = busy_timeout_seconds
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path)
        else:
            target = ":memory:"

        self._conn = sqlite3.connect(
            target,
            timeout=self.busy_timeout_seconds,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if self.db_path is not None:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

        logger.info(f"Sync store connected to {target}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("Sync store connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open (or join) a write transaction.

        Any exception rolls back the outermost transaction. Transient
        ``sqlite3.OperationalError`` values are re-raised as
        ``TransientStoreError``.
        """
        conn = self._ensure_connected()
        with self._lock:
            outer = self._depth == 0
            if outer:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                except sqlite3.OperationalError as e:
                    if is_transient(e):
                        raise TransientStoreError(str(e)) from e
                    raise

            self._depth += 1
            try:
                yield conn
            except BaseException as e:
                self._depth -= 1
                if outer:
                    conn.execute("ROLLBACK")
                    logger.debug(f"Transaction rolled back: {e!r}")
                if isinstance(e, sqlite3.OperationalError) and is_transient(e):
                    raise TransientStoreError(str(e)) from e
                raise
            else:
                self._depth -= 1
                if outer:
                    try:
                        conn.execute("COMMIT")
                    except sqlite3.OperationalError as e:
                        conn.execute("ROLLBACK")
                        if is_transient(e):
                            raise TransientStoreError(str(e)) from e
                        raise

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Borrow the connection for read-only queries."""
        conn = self._ensure_connected()
        with self._lock:
            try:
                yield conn
            except sqlite3.OperationalError as e:
                if is_transient(e):
                    raise TransientStoreError(str(e)) from e
                raise

    def get_stats(self) -> dict[str, Any]:
        """Get row counts per table and the database file size."""
        stats: dict[str, Any] = {}
        with self.read() as conn:
            for table in (
                "change_log",
                "sync_conflicts",
                "sync_queue",
                "device_registrations",
            ):
                cursor = conn.execute(f"SELECT COUNT(*) FROM {table}")
                stats[f"{table}_rows"] = cursor.fetchone()[0]

        if self.db_path is not None and self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
