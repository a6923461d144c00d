"""CLI entry point for recipesync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .store import Database
from .sync import SyncCoordinator, create_notifier
from .sync.notifier import MQTTNotifier


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


def _open_store(config: Config) -> Database:
    db = Database(
        config.store.db_path,
        busy_timeout_seconds=config.store.busy_timeout_seconds,
    )
    db.connect()
    return db


def _coordinator(config: Config, db: Database) -> SyncCoordinator:
    return SyncCoordinator.create(db, config.sync)


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the sync server."""
    config = load_config(args.config)

    import uvicorn

    from .api import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    db = _open_store(config)
    notifier = create_notifier(config.notifications)
    coordinator = SyncCoordinator.create(db, config.sync, notifier=notifier)
    app = create_app(config, coordinator=coordinator, db=db)

    print("Starting recipesync server")
    print(f"Store: {config.store.db_path}")
    print(f"URL: http://{host}:{port}")

    try:
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="info" if args.verbose else "warning",
            )
        )
        await server.serve()
    finally:
        notifier.close()
        db.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show store statistics and notifier reachability."""
    config = load_config(args.config)

    db = _open_store(config)
    try:
        store_stats = db.get_stats()
    finally:
        db.close()

    notify_status = {
        "enabled": config.notifications.enabled,
        "broker": config.notifications.broker,
        "port": config.notifications.port,
        "reachable": False,
    }
    if config.notifications.enabled:
        notify_status["reachable"] = MQTTNotifier(config.notifications).check_connection()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "store": {"db_path": config.store.db_path, **store_stats},
        "notifications": notify_status,
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("Recipesync Status")
    print("=================")
    print(f"Store ({config.store.db_path}):")
    print(f"  Changes: {store_stats['change_log_rows']}")
    print(f"  Conflicts: {store_stats['sync_conflicts_rows']}")
    print(f"  Queue items: {store_stats['sync_queue_rows']}")
    print(f"  Devices: {store_stats['device_registrations_rows']}")
    if "db_size_mb" in store_stats:
        print(f"  Size: {store_stats['db_size_mb']} MB")
    print()

    print(f"Notifications ({notify_status['broker']}:{notify_status['port']}):")
    if not notify_status["enabled"]:
        print("  Status: Disabled (devices poll)")
    elif notify_status["reachable"]:
        print("  Status: Reachable")
    else:
        print("  Status: Not reachable")
        print("  Make sure the MQTT broker is running")

    return 0


def cmd_devices_list(args: argparse.Namespace) -> int:
    """List a user's devices."""
    config = load_config(args.config)
    db = _open_store(config)
    try:
        devices = _coordinator(config, db).list_devices(args.user, include_inactive=True)
    finally:
        db.close()

    if not devices:
        print(f"No devices registered for {args.user}")
        return 0

    for device in devices:
        state = "active" if device.is_active else "inactive"
        last_sync = device.last_sync_at.isoformat() if device.last_sync_at else "never"
        print(f"  {device.id}  {device.device_name} ({device.device_type}, {state})")
        print(f"           Last sync: {last_sync}")
    return 0


def cmd_conflicts_list(args: argparse.Namespace) -> int:
    """List a user's unresolved conflicts."""
    config = load_config(args.config)
    db = _open_store(config)
    try:
        conflicts = _coordinator(config, db).list_conflicts(args.user)
    finally:
        db.close()

    if not conflicts:
        print(f"No unresolved conflicts for {args.user}")
        return 0

    for conflict in conflicts:
        print(f"  {conflict.id}  {conflict.entity_type}/{conflict.entity_id}")
        print(
            f"           {conflict.device1_id} (v{conflict.server_version}) vs "
            f"{conflict.device2_id} (base v{conflict.base_version})"
        )
    return 0


def cmd_queue_failed(args: argparse.Namespace) -> int:
    """List parked queue items."""
    config = load_config(args.config)
    db = _open_store(config)
    try:
        items = _coordinator(config, db).list_failed(args.user, args.device)
    finally:
        db.close()

    if not items:
        print("No failed queue items")
        return 0

    for item in items:
        print(
            f"  {item.id}  {item.entity_type}/{item.entity_id} v{item.version} "
            f"-> {item.target_device_id}"
        )
        print(f"           Attempts: {item.retry_count}, error: {item.error_message}")
    return 0


def cmd_queue_requeue(args: argparse.Namespace) -> int:
    """Give a parked item a fresh retry budget."""
    from .errors import NotFound

    config = load_config(args.config)
    db = _open_store(config)
    try:
        item = _coordinator(config, db).requeue(args.item_id)
    except NotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()

    print(f"Queue item {item.id} is {item.status.value}")
    return 0


def cmd_queue_purge(args: argparse.Namespace) -> int:
    """Delete old delivered items and items stranded on unregistered devices."""
    config = load_config(args.config)
    db = _open_store(config)
    try:
        coordinator = _coordinator(config, db)
        deleted = coordinator.purge_delivered(args.days)
        stranded = coordinator.purge_unregistered(args.days)
    finally:
        db.close()

    print(f"Purged {deleted} delivered item(s)")
    print(f"Purged {stranded} item(s) of unregistered devices")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="recipesync",
        description="Multi-device synchronization service for recipe data",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the sync server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 8085)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show store and notifier status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Device commands
    devices_parser = subparsers.add_parser("devices", help="Inspect registered devices")
    devices_subparsers = devices_parser.add_subparsers(dest="devices_command", help="Device commands")
    devices_list = devices_subparsers.add_parser("list", help="List a user's devices")
    devices_list.add_argument("--user", required=True, help="User id")
    devices_list.set_defaults(func=cmd_devices_list)

    # Conflict commands
    conflicts_parser = subparsers.add_parser("conflicts", help="Inspect conflicts")
    conflicts_subparsers = conflicts_parser.add_subparsers(dest="conflicts_command", help="Conflict commands")
    conflicts_list = conflicts_subparsers.add_parser("list", help="List unresolved conflicts")
    conflicts_list.add_argument("--user", required=True, help="User id")
    conflicts_list.set_defaults(func=cmd_conflicts_list)

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Recover the delivery queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_failed = queue_subparsers.add_parser("failed", help="List parked items")
    queue_failed.add_argument("--user", required=True, help="User id")
    queue_failed.add_argument("--device", default=None, help="Only items for this device")
    queue_failed.set_defaults(func=cmd_queue_failed)

    queue_requeue = queue_subparsers.add_parser("requeue", help="Requeue a parked item")
    queue_requeue.add_argument("item_id", help="Queue item id")
    queue_requeue.set_defaults(func=cmd_queue_requeue)

    queue_purge = queue_subparsers.add_parser(
        "purge", help="Delete old delivered items and items of unregistered devices"
    )
    queue_purge.add_argument(
        "--days",
        type=int,
        default=None,
        help="Age in days (default: from config, 30)",
    )
    queue_purge.set_defaults(func=cmd_queue_purge)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, getattr(args, "json", False))

    if not args.command:
        parser.print_help()
        return 1

    # Group commands require their own subcommand
    groups = {
        "devices": (devices_parser, "devices_command"),
        "conflicts": (conflicts_parser, "conflicts_command"),
        "queue": (queue_parser, "queue_command"),
    }
    if args.command in groups:
        group_parser, dest = groups[args.command]
        if not getattr(args, dest):
            group_parser.print_help()
            return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
