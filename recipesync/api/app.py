"""FastAPI application exposing the sync service over HTTP."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..config import Config
from ..errors import (
    DeliveryExhausted,
    InvalidResolution,
    NotFound,
    TransientStoreError,
    VersionConflict,
)
from ..models import Operation, utcnow
from ..store import Database
from ..sync import SyncCoordinator
from ..sync.notifier import Notifier

logger = logging.getLogger(__name__)


class _Body(BaseModel):
    """Request body with camelCase wire names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PushRequest(_Body):
    user_id: str
    device_id: str
    entity_type: str
    entity_id: str
    operation: Operation
    payload: Any = None
    client_timestamp: datetime
    known_base_version: int = 0


class QueueItemRequest(_Body):
    queue_item_id: str


class FailureRequest(_Body):
    queue_item_id: str
    error_message: str


class RegisterRequest(_Body):
    user_id: str
    device_name: str
    device_type: str
    os_version: str = ""
    app_version: str = ""


class ResolveRequest(_Body):
    resolution: str
    resolved_data: Any = None
    resolved_by: str


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def create_app(
    config: Config,
    coordinator: SyncCoordinator | None = None,
    db: Database | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    """Create the sync API application.

    Args:
        config: Application configuration.
        coordinator: Prebuilt coordinator. Built over ``db`` if None.
        db: Database to use when building the coordinator. Opened from
            ``config.store`` if None.
        notifier: Notifier for a coordinator built here.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Recipe Sync",
        description="Multi-device synchronization service for recipe data",
        version="0.1.0",
    )

    if coordinator is None:
        if db is None:
            db = Database(
                config.store.db_path,
                busy_timeout_seconds=config.store.busy_timeout_seconds,
            )
            db.connect()
        coordinator = SyncCoordinator.create(db, config.sync, notifier=notifier)

    app.state.config = config
    app.state.coordinator = coordinator
    app.state.db = db

    # ==================== Error mapping ====================

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return _error(404, exc)

    @app.exception_handler(VersionConflict)
    async def version_conflict_handler(request: Request, exc: VersionConflict):
        return _error(409, exc)

    @app.exception_handler(DeliveryExhausted)
    async def exhausted_handler(request: Request, exc: DeliveryExhausted):
        return _error(410, exc)

    @app.exception_handler(InvalidResolution)
    async def invalid_resolution_handler(request: Request, exc: InvalidResolution):
        return _error(422, exc)

    @app.exception_handler(TransientStoreError)
    async def transient_handler(request: Request, exc: TransientStoreError):
        logger.warning(f"{request.method} {request.url.path}: store unavailable: {exc}")
        return _error(503, exc)

    # ==================== Push / Pull ====================

    @app.post("/sync/push")
    def push(body: PushRequest) -> dict[str, Any]:
        """Accept one change from a device."""
        result = coordinator.push(
            user_id=body.user_id,
            device_id=body.device_id,
            entity_type=body.entity_type,
            entity_id=body.entity_id,
            operation=body.operation,
            payload=body.payload,
            client_timestamp=body.client_timestamp,
            known_base_version=body.known_base_version,
        )
        return result.to_dict()

    @app.get("/sync/pull")
    def pull(
        user_id: str = Query(alias="userId"),
        device_id: str = Query(alias="deviceId"),
        limit: int | None = Query(default=None, ge=1),
    ) -> list[dict[str, Any]]:
        """Queued items for a device, highest priority first."""
        items = coordinator.pull(user_id, device_id, limit)
        return [item.to_dict() for item in items]

    @app.post("/sync/ack", status_code=204)
    def ack(body: QueueItemRequest) -> Response:
        coordinator.ack(body.queue_item_id)
        return Response(status_code=204)

    @app.post("/sync/failure")
    def failure(body: FailureRequest) -> dict[str, Any]:
        """Report that a device could not apply an item."""
        item = coordinator.report_failure(body.queue_item_id, body.error_message)
        return item.to_dict()

    @app.get("/sync/changes")
    def changes(
        user_id: str = Query(alias="userId"),
        device_id: str = Query(alias="deviceId"),
        since: datetime | None = None,
        limit: int | None = Query(default=None, ge=1),
    ) -> dict[str, Any]:
        """Catch-up: log entries from the user's other devices."""
        entries = coordinator.catch_up(user_id, device_id, since, limit)
        return {
            "count": len(entries),
            "changes": [entry.to_dict() for entry in entries],
        }

    @app.get("/sync/history")
    def history(
        user_id: str = Query(alias="userId"),
        entity_type: str = Query(alias="entityType"),
        entity_id: str = Query(alias="entityId"),
    ) -> dict[str, Any]:
        entries = coordinator.get_history(user_id, entity_type, entity_id)
        return {
            "count": len(entries),
            "changes": [entry.to_dict() for entry in entries],
        }

    # ==================== Devices ====================

    @app.post("/sync/devices/register")
    def register_device(body: RegisterRequest) -> dict[str, Any]:
        device = coordinator.register_device(
            body.user_id,
            body.device_name,
            body.device_type,
            body.os_version,
            body.app_version,
        )
        return device.to_dict()

    @app.post("/sync/devices/{device_id}/unregister")
    def unregister_device(device_id: str) -> dict[str, Any]:
        return coordinator.unregister_device(device_id).to_dict()

    @app.get("/sync/devices")
    def list_devices(
        user_id: str = Query(alias="userId"),
        include_inactive: bool = Query(False, alias="includeInactive"),
    ) -> dict[str, Any]:
        devices = coordinator.list_devices(user_id, include_inactive=include_inactive)
        return {
            "count": len(devices),
            "devices": [device.to_dict() for device in devices],
        }

    # ==================== Conflicts ====================

    @app.get("/sync/conflicts")
    def list_conflicts(user_id: str = Query(alias="userId")) -> dict[str, Any]:
        """Unresolved conflicts for a user, oldest first."""
        conflicts = coordinator.list_conflicts(user_id)
        return {
            "count": len(conflicts),
            "conflicts": [conflict.to_dict() for conflict in conflicts],
        }

    @app.post("/sync/conflicts/{conflict_id}/resolve")
    def resolve_conflict(conflict_id: str, body: ResolveRequest) -> dict[str, Any]:
        conflict = coordinator.resolve_conflict(
            conflict_id, body.resolution, body.resolved_data, body.resolved_by
        )
        return conflict.to_dict()

    # ==================== Queue recovery ====================

    @app.get("/sync/queue/failed")
    def list_failed(
        user_id: str = Query(alias="userId"),
        device_id: str | None = Query(None, alias="deviceId"),
    ) -> dict[str, Any]:
        items = coordinator.list_failed(user_id, device_id)
        return {"count": len(items), "items": [item.to_dict() for item in items]}

    @app.post("/sync/queue/{item_id}/requeue")
    def requeue(item_id: str) -> dict[str, Any]:
        return coordinator.requeue(item_id).to_dict()

    # ==================== Status ====================

    @app.get("/sync/stats")
    def stats(
        user_id: str = Query(alias="userId"),
        device_id: str | None = Query(None, alias="deviceId"),
    ) -> dict[str, Any]:
        return coordinator.get_stats(user_id, device_id).to_dict()

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK; a store failure is reported in the body.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": utcnow().isoformat(),
            "components": {
                "store": db is not None,
                "notifications": config.notifications.enabled,
            },
        }

        if db is not None:
            try:
                health["components"].update(db.get_stats())
            except Exception as e:
                health["status"] = "degraded"
                health["components"]["store_error"] = str(e)

        return health

    return app
