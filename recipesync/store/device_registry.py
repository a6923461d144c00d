"""Registry of the devices that belong to each user."""

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Callable

from ..errors import NotFound
from ..models import DeviceRegistration, utcnow
from .database import Database, from_db_time, to_db_time

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, user_id, device_name, device_type, os_version, app_version,
    registered_at, last_sync_at, is_active
"""


def _row_to_device(row: sqlite3.Row) -> DeviceRegistration:
    return DeviceRegistration(
        id=row["id"],
        user_id=row["user_id"],
        device_name=row["device_name"],
        device_type=row["device_type"],
        os_version=row["os_version"],
        app_version=row["app_version"],
        registered_at=from_db_time(row["registered_at"]),
        last_sync_at=from_db_time(row["last_sync_at"]),
        is_active=bool(row["is_active"]),
    )


class DeviceRegistry:
    """Tracks devices per user. Unregistering is a soft delete."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self._db = db
        self._clock = clock

    def register(
        self,
        user_id: str,
        device_name: str,
        device_type: str,
        os_version: str,
        app_version: str,
    ) -> DeviceRegistration:
        """Register a new device for a user."""
        device = DeviceRegistration(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_name=device_name,
            device_type=device_type,
            os_version=os_version,
            app_version=app_version,
            registered_at=self._clock(),
            last_sync_at=None,
            is_active=True,
        )

        with self._db.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO device_registrations ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    device.id,
                    device.user_id,
                    device.device_name,
                    device.device_type,
                    device.os_version,
                    device.app_version,
                    to_db_time(device.registered_at),
                    None,
                    1,
                ),
            )

        logger.info(
            f"Registered {device_type} device '{device_name}' ({device.id}) for user {user_id}"
        )
        return device

    def get(self, device_id: str) -> DeviceRegistration | None:
        with self._db.read() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM device_registrations WHERE id = ?",
                (device_id,),
            ).fetchone()
        return _row_to_device(row) if row else None

    def require(self, device_id: str) -> DeviceRegistration:
        """Get a device or raise NotFound."""
        device = self.get(device_id)
        if device is None:
            raise NotFound("device", device_id)
        return device

    def unregister(self, device_id: str) -> DeviceRegistration:
        """Deactivate a device. Queue items targeting it stay in storage.

        Unregistering an inactive device is a no-op.

        Raises:
            NotFound: Unknown device.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE device_registrations SET is_active = 0 WHERE id = ?",
                (device_id,),
            )
            if cursor.rowcount == 0:
                raise NotFound("device", device_id)

        logger.info(f"Unregistered device {device_id}")
        return self.require(device_id)

    def list_active(self, user_id: str) -> list[DeviceRegistration]:
        """List a user's active devices, oldest registration first."""
        return self.list_devices(user_id, include_inactive=False)

    def list_devices(
        self, user_id: str, include_inactive: bool = True
    ) -> list[DeviceRegistration]:
        query = f"SELECT {_COLUMNS} FROM device_registrations WHERE user_id = ?"
        if not include_inactive:
            query += " AND is_active = 1"
        query += " ORDER BY registered_at ASC, id ASC"

        with self._db.read() as conn:
            return [_row_to_device(row) for row in conn.execute(query, (user_id,))]

    def touch_last_sync(
        self, device_id: str, timestamp: datetime | None = None
    ) -> None:
        """Record a successful pull.

        Raises:
            NotFound: Unknown device.
        """
        timestamp = timestamp or self._clock()
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE device_registrations SET last_sync_at = ? WHERE id = ?",
                (to_db_time(timestamp), device_id),
            )
            if cursor.rowcount == 0:
                raise NotFound("device", device_id)
