"""Configuration loading for recipesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8085


@dataclass
class StoreConfig:
    """Configuration for the SQLite backing store."""

    db_path: str = "~/.recipesync/sync.db"
    busy_timeout_seconds: float = 5.0


@dataclass
class SyncConfig:
    """Configuration for the sync coordinator and delivery queue."""

    max_delivery_retries: int = 5
    delivery_backoff_seconds: float = 5.0
    max_delivery_backoff_seconds: float = 3600.0
    version_retry_attempts: int = 3
    store_retry_attempts: int = 3
    store_retry_backoff_seconds: float = 0.5
    default_pull_limit: int = 100
    conflict_policy: str = "last_write_wins"
    auto_resolve: bool = False
    delivered_retention_days: int = 30


@dataclass
class NotificationConfig:
    """Configuration for the MQTT "pull now" notifier."""

    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    topic_prefix: str = "recipesync"
    username: str | None = None
    password: str | None = None


@dataclass
class ClientConfig:
    """Configuration for the device-side sync client."""

    server_url: str = ""
    batch_size: int = 100
    max_retries: int = 3
    timeout: float = 30.0


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with RECIPESYNC_ prefix."""
    return os.environ.get(f"RECIPESYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    # Store overrides
    if db_path := _get_env("STORE_DB_PATH"):
        config.store.db_path = db_path
    if busy_timeout := _get_env("STORE_BUSY_TIMEOUT"):
        config.store.busy_timeout_seconds = float(busy_timeout)

    # Sync overrides
    if max_retries := _get_env("SYNC_MAX_DELIVERY_RETRIES"):
        config.sync.max_delivery_retries = int(max_retries)
    if backoff := _get_env("SYNC_DELIVERY_BACKOFF"):
        config.sync.delivery_backoff_seconds = float(backoff)
    if policy := _get_env("SYNC_CONFLICT_POLICY"):
        config.sync.conflict_policy = policy
    if auto_resolve := _get_env("SYNC_AUTO_RESOLVE"):
        config.sync.auto_resolve = _is_true(auto_resolve)

    # Notification overrides
    if enabled := _get_env("NOTIFY_ENABLED"):
        config.notifications.enabled = _is_true(enabled)
    if broker := _get_env("NOTIFY_BROKER"):
        config.notifications.broker = broker
    if port := _get_env("NOTIFY_PORT"):
        config.notifications.port = int(port)
    if username := _get_env("NOTIFY_USERNAME"):
        config.notifications.username = username
    if password := _get_env("NOTIFY_PASSWORD"):
        config.notifications.password = password

    # Client overrides
    if server_url := _get_env("CLIENT_SERVER_URL"):
        config.client.server_url = server_url

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )

            # Parse store config
            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    busy_timeout_seconds=store_data.get(
                        "busy_timeout_seconds", config.store.busy_timeout_seconds
                    ),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    max_delivery_retries=sync_data.get(
                        "max_delivery_retries", config.sync.max_delivery_retries
                    ),
                    delivery_backoff_seconds=sync_data.get(
                        "delivery_backoff_seconds",
                        config.sync.delivery_backoff_seconds,
                    ),
                    max_delivery_backoff_seconds=sync_data.get(
                        "max_delivery_backoff_seconds",
                        config.sync.max_delivery_backoff_seconds,
                    ),
                    version_retry_attempts=sync_data.get(
                        "version_retry_attempts", config.sync.version_retry_attempts
                    ),
                    store_retry_attempts=sync_data.get(
                        "store_retry_attempts", config.sync.store_retry_attempts
                    ),
                    store_retry_backoff_seconds=sync_data.get(
                        "store_retry_backoff_seconds",
                        config.sync.store_retry_backoff_seconds,
                    ),
                    default_pull_limit=sync_data.get(
                        "default_pull_limit", config.sync.default_pull_limit
                    ),
                    conflict_policy=sync_data.get(
                        "conflict_policy", config.sync.conflict_policy
                    ),
                    auto_resolve=sync_data.get("auto_resolve", config.sync.auto_resolve),
                    delivered_retention_days=sync_data.get(
                        "delivered_retention_days",
                        config.sync.delivered_retention_days,
                    ),
                )

            # Parse notification config
            if "notifications" in data:
                notify_data = data["notifications"]
                config.notifications = NotificationConfig(
                    enabled=notify_data.get("enabled", config.notifications.enabled),
                    broker=notify_data.get("broker", config.notifications.broker),
                    port=notify_data.get("port", config.notifications.port),
                    topic_prefix=notify_data.get(
                        "topic_prefix", config.notifications.topic_prefix
                    ),
                    username=notify_data.get("username"),
                    password=notify_data.get("password"),
                )

            # Parse client config
            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    server_url=client_data.get("server_url", config.client.server_url),
                    batch_size=client_data.get("batch_size", config.client.batch_size),
                    max_retries=client_data.get("max_retries", config.client.max_retries),
                    timeout=client_data.get("timeout", config.client.timeout),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config
