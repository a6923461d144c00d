"""Device-side client for the sync service.

Keeps a small outbox of local changes, pushes them with the version they
were based on, pulls queued changes, applies them through a callback and
acknowledges (or reports) each one.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from ..models import Operation, PushResult, PushStatus, QueueItem, utcnow

logger = logging.getLogger(__name__)

Applier = Callable[[QueueItem], Awaitable[None] | None]


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some items went through
    FAILED = "failed"
    OFFLINE = "offline"  # Server unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    pushed: int = 0
    pulled: int = 0
    conflicts: list[str] = field(default_factory=list)
    failed: int = 0
    error: str | None = None
    timestamp: datetime | None = None


@dataclass
class OutboxEntry:
    """A local change waiting to be pushed."""

    entity_type: str
    entity_id: str
    operation: Operation
    payload: Any
    known_base_version: int
    client_timestamp: datetime

    def to_request(self, user_id: str, device_id: str) -> dict[str, Any]:
        return {
            "userId": user_id,
            "deviceId": device_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "operation": self.operation.value,
            "payload": self.payload,
            "clientTimestamp": self.client_timestamp.isoformat(),
            "knownBaseVersion": self.known_base_version,
        }


def _offline_or_failed(error: str) -> SyncStatus:
    return SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED


def _causal_order(items: list[QueueItem]) -> list[QueueItem]:
    """Order each entity's items by version, entities in first-seen order.

    The server hands out items by priority, so a delete can arrive ahead of
    the create it follows.
    """
    first_seen: dict[tuple[str, str], int] = {}
    for index, item in enumerate(items):
        first_seen.setdefault((item.entity_type, item.entity_id), index)
    return sorted(
        items,
        key=lambda item: (first_seen[(item.entity_type, item.entity_id)], item.version),
    )


class DeviceSyncClient:
    """Client a device uses to sync with the server.

    Supports:
    - Push: send queued local changes with their base version
    - Pull: apply and acknowledge changes from the user's other devices
    - Full sync: push then pull

    Uses exponential backoff for retries of connection and server errors.
    """

    def __init__(
        self,
        server_url: str | None,
        user_id: str,
        device_id: str | None = None,
        batch_size: int = 100,
        max_retries: int = 3,
        timeout: float = 30.0,
    ):
        """Initialize the client.

        Args:
            server_url: Base URL of the sync server (e.g., "http://sync:8085").
            user_id: User the device belongs to.
            device_id: Registered device id; set by ``register()`` if None.
            batch_size: Maximum items per pull.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
        """
        self.server_url = server_url
        self.user_id = user_id
        self.device_id = device_id
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout

        self.outbox: list[OutboxEntry] = []
        self.known_versions: dict[tuple[str, str], int] = {}
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.server_url:
            return None, "No server URL configured"

        url = f"{self.server_url.rstrip('/')}{path}"
        backoff = 1.0

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url, params=params)
                    elif method == "POST":
                        response = await client.post(url, json=json_data, params=params)
                    else:
                        return None, f"Unsupported method: {method}"

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code == 204:
                        self._consecutive_failures = 0
                        return {}, None

                    elif response.status_code >= 500:
                        # Server error or store unavailable, retry
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except Exception as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e)

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"Connection: max retries ({self.max_retries}) exceeded"

    # ==================== Registration ====================

    async def register(
        self,
        device_name: str,
        device_type: str,
        os_version: str,
        app_version: str,
    ) -> dict[str, Any] | None:
        """Register this device and remember the assigned id."""
        data, error = await self._request_with_retry(
            "POST",
            "/sync/devices/register",
            {
                "userId": self.user_id,
                "deviceName": device_name,
                "deviceType": device_type,
                "osVersion": os_version,
                "appVersion": app_version,
            },
        )
        if error:
            logger.error(f"Device registration failed: {error}")
            return None

        self.device_id = data["id"]
        logger.info(f"Registered as device {self.device_id}")
        return data

    async def unregister(self) -> bool:
        if not self.device_id:
            return False
        _, error = await self._request_with_retry(
            "POST", f"/sync/devices/{self.device_id}/unregister"
        )
        if error:
            logger.error(f"Device unregistration failed: {error}")
            return False
        return True

    # ==================== Push ====================

    def queue_change(
        self,
        entity_type: str,
        entity_id: str,
        operation: Operation | str,
        payload: Any,
        client_timestamp: datetime | None = None,
    ) -> OutboxEntry:
        """Record a local change for the next push.

        The base version is the last version of the entity this device has
        seen, or 0 for an entity it has never synced.
        """
        entry = OutboxEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            operation=Operation(operation),
            payload=payload,
            known_base_version=self.known_versions.get((entity_type, entity_id), 0),
            client_timestamp=client_timestamp or utcnow(),
        )
        self.outbox.append(entry)
        return entry

    async def push_change(self, entry: OutboxEntry) -> tuple[PushResult | None, str | None]:
        """Push one change.

        Returns:
            Tuple of (push_result, error_message).
        """
        if not self.device_id:
            return None, "Device is not registered"

        data, error = await self._request_with_retry(
            "POST", "/sync/push", entry.to_request(self.user_id, self.device_id)
        )
        if error:
            return None, error

        status = PushStatus(data["status"])
        if status == PushStatus.CONFLICTED:
            return PushResult(status=status, conflict_id=data["conflictId"]), None

        self.known_versions[(entry.entity_type, entry.entity_id)] = data["version"]
        return (
            PushResult(
                status=status,
                version=data["version"],
                change_id=data.get("changeId"),
                replayed=data.get("replayed", False),
            ),
            None,
        )

    async def push_pending(self) -> SyncResult:
        """Push the outbox in order.

        Stops at the first transport error; the failed change and everything
        after it stay in the outbox for the next attempt.
        """
        pushed = 0
        conflicts: list[str] = []

        while self.outbox:
            entry = self.outbox[0]
            result, error = await self.push_change(entry)
            if error:
                return SyncResult(
                    status=SyncStatus.PARTIAL if pushed or conflicts else _offline_or_failed(error),
                    pushed=pushed,
                    conflicts=conflicts,
                    error=error,
                )

            self.outbox.pop(0)
            if result.status == PushStatus.CONFLICTED:
                logger.info(
                    f"Push of {entry.entity_type}/{entry.entity_id} conflicted: "
                    f"{result.conflict_id}"
                )
                conflicts.append(result.conflict_id)
            else:
                pushed += 1

        return SyncResult(
            status=SyncStatus.SUCCESS,
            pushed=pushed,
            conflicts=conflicts,
            timestamp=utcnow(),
        )

    # ==================== Pull ====================

    async def pull_changes(self, apply: Applier) -> SyncResult:
        """Pull queued changes, apply each one and acknowledge it.

        Items of one entity are applied in version order. Items at or below
        the version this device already has are acknowledged without being
        applied. An item whose ``apply`` raises is reported as a failed
        delivery and will be offered again after the server's backoff; later
        items of the same entity wait for it.
        """
        if not self.device_id:
            return SyncResult(status=SyncStatus.FAILED, error="Device is not registered")

        data, error = await self._request_with_retry(
            "GET",
            "/sync/pull",
            params={
                "userId": self.user_id,
                "deviceId": self.device_id,
                "limit": self.batch_size,
            },
        )
        if error:
            return SyncResult(status=_offline_or_failed(error), error=error)

        items = _causal_order([QueueItem.from_dict(item) for item in data])
        applied = 0
        failed = 0
        blocked: set[tuple[str, str]] = set()

        for item in items:
            key = (item.entity_type, item.entity_id)
            if key in blocked:
                # Offered again on a later pull, after the failed version
                continue

            stale = item.version <= self.known_versions.get(key, 0)
            if stale:
                logger.debug(
                    f"Skipping {item.entity_type}/{item.entity_id} v{item.version}, "
                    f"already at v{self.known_versions[key]}"
                )
            else:
                try:
                    outcome = apply(item)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    logger.warning(
                        f"Applying {item.entity_type}/{item.entity_id} v{item.version} failed: {e}"
                    )
                    failed += 1
                    blocked.add(key)
                    await self._request_with_retry(
                        "POST",
                        "/sync/failure",
                        {"queueItemId": item.id, "errorMessage": str(e)},
                    )
                    continue

            _, ack_error = await self._request_with_retry(
                "POST", "/sync/ack", {"queueItemId": item.id}
            )
            if ack_error:
                # Unacknowledged items are pulled again next time
                logger.warning(f"Ack of {item.id} failed: {ack_error}")
                continue

            if not stale:
                self.known_versions[key] = item.version
                applied += 1

        self._last_sync = utcnow()
        return SyncResult(
            status=SyncStatus.PARTIAL if failed else SyncStatus.SUCCESS,
            pulled=applied,
            failed=failed,
            timestamp=self._last_sync,
        )

    async def catch_up(self, since: datetime | None = None) -> list[dict[str, Any]]:
        """Fetch log entries from the user's other devices since a time."""
        if not self.device_id:
            return []

        params: dict[str, Any] = {"userId": self.user_id, "deviceId": self.device_id}
        if since is not None:
            params["since"] = since.isoformat()

        data, error = await self._request_with_retry("GET", "/sync/changes", params=params)
        if error:
            logger.error(f"Catch-up failed: {error}")
            return []
        return data.get("changes", [])

    # ==================== Conflicts ====================

    async def list_conflicts(self) -> list[dict[str, Any]]:
        data, error = await self._request_with_retry(
            "GET", "/sync/conflicts", params={"userId": self.user_id}
        )
        if error:
            logger.error(f"Listing conflicts failed: {error}")
            return []
        return data.get("conflicts", [])

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: str,
        resolved_data: Any = None,
        resolved_by: str | None = None,
    ) -> dict[str, Any] | None:
        data, error = await self._request_with_retry(
            "POST",
            f"/sync/conflicts/{conflict_id}/resolve",
            {
                "resolution": resolution,
                "resolvedData": resolved_data,
                "resolvedBy": resolved_by or self.device_id or self.user_id,
            },
        )
        if error:
            logger.error(f"Resolving conflict {conflict_id} failed: {error}")
            return None
        return data

    # ==================== Loop ====================

    async def full_sync(self, apply: Applier) -> SyncResult:
        """Push the outbox, then pull."""
        push_result = await self.push_pending()
        if push_result.status == SyncStatus.OFFLINE:
            return push_result

        pull_result = await self.pull_changes(apply)

        status = pull_result.status
        if push_result.status != SyncStatus.SUCCESS and status == SyncStatus.SUCCESS:
            status = SyncStatus.PARTIAL

        return SyncResult(
            status=status,
            pushed=push_result.pushed,
            pulled=pull_result.pulled,
            conflicts=push_result.conflicts,
            failed=pull_result.failed,
            error=push_result.error or pull_result.error,
            timestamp=utcnow(),
        )

    async def sync_loop(
        self,
        apply: Applier,
        interval_seconds: int = 60,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            apply: Callback applying one pulled item locally.
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.full_sync(apply)
                logger.info(
                    f"Sync: {result.status.value}, pushed={result.pushed}, "
                    f"pulled={result.pulled}, conflicts={len(result.conflicts)}"
                )
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(interval_seconds * (2 ** self._consecutive_failures), 3600)
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        return {
            "server_url": self.server_url,
            "device_id": self.device_id,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_changes": len(self.outbox),
            "known_entities": len(self.known_versions),
        }
