"""Best-effort "pull now" notifications to connected devices.

The delivery queue is the durable source of truth; a notification only
lets a device that is online pull immediately instead of waiting for its
next poll. Notifier failures never fail the operation that triggered them.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import paho.mqtt.client as mqtt

from ..config import NotificationConfig

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Port for signalling a device that it has something to pull."""

    @abstractmethod
    def notify(self, device_id: str, summary: dict[str, Any]) -> bool:
        """Signal one device.

        Args:
            device_id: Target device.
            summary: Small JSON-serializable description of what changed.

        Returns:
            True if the signal was handed to the transport.
        """

    def close(self) -> None:
        """Release transport resources."""


class NullNotifier(Notifier):
    """Notifier used when no real-time transport is configured."""

    def notify(self, device_id: str, summary: dict[str, Any]) -> bool:
        logger.debug(f"No notifier configured, skipping signal to {device_id}: {summary}")
        return False


class MQTTNotifier(Notifier):
    """Publishes notifications to ``{topic_prefix}/devices/{device_id}``."""

    def __init__(self, config: NotificationConfig, connect_timeout: float = 5.0):
        self.config = config
        self.connect_timeout = connect_timeout

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._handle_connect
        self._client.on_disconnect = self._handle_disconnect
        self._connected = False

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    def connect(self) -> bool:
        """Connect to the MQTT broker.

        Returns:
            True if connection successful.
        """
        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(self.config.broker, self.config.port, keepalive=60)
            self._client.loop_start()
        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

        deadline = time.monotonic() + self.connect_timeout
        while time.monotonic() < deadline:
            if self._connected:
                return True
            time.sleep(0.1)

        logger.error("Timeout waiting for MQTT connection")
        return False

    def close(self) -> None:
        """Disconnect from the MQTT broker."""
        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def topic_for(self, device_id: str) -> str:
        return f"{self.config.topic_prefix}/devices/{device_id}"

    def notify(self, device_id: str, summary: dict[str, Any]) -> bool:
        if not self._connected:
            logger.warning(f"Cannot notify {device_id}: not connected to broker")
            return False

        result = self._client.publish(
            self.topic_for(device_id), json.dumps(summary), qos=1
        )
        return result.rc == mqtt.MQTT_ERR_SUCCESS

    def check_connection(self) -> bool:
        """Check if the broker is reachable."""
        if self._connected:
            return True

        try:
            test_client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            test_client.connect(self.config.broker, self.config.port, keepalive=5)
            test_client.disconnect()
            return True
        except Exception:
            return False


def create_notifier(config: NotificationConfig) -> Notifier:
    """Build the notifier described by config, connecting if enabled."""
    if not config.enabled:
        return NullNotifier()

    notifier = MQTTNotifier(config)
    if not notifier.connect():
        logger.warning(
            "MQTT notifier unavailable, devices will rely on polling until it reconnects"
        )
    return notifier
