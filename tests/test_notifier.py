"""Tests for device notifiers."""

import json
from unittest.mock import MagicMock, patch

import paho.mqtt.client as mqtt
import pytest

from recipesync.config import NotificationConfig
from recipesync.sync import MQTTNotifier, NullNotifier, create_notifier


@pytest.fixture
def notify_config():
    return NotificationConfig(enabled=True, broker="mqtt.local", topic_prefix="kitchen")


@pytest.fixture
def mock_paho():
    with patch("recipesync.sync.notifier.mqtt.Client") as client_cls:
        yield client_cls.return_value


class TestNullNotifier:
    def test_notify(self):
        """Test the null notifier accepts and drops signals."""
        assert NullNotifier().notify("device-1", {"event": "change"}) is False


class TestMQTTNotifier:
    """Tests for MQTTNotifier."""

    def test_topic(self, notify_config, mock_paho):
        """Test per-device topics."""
        notifier = MQTTNotifier(notify_config)

        assert notifier.topic_for("device-1") == "kitchen/devices/device-1"

    def test_notify_not_connected(self, notify_config, mock_paho):
        """Test signals are dropped while disconnected."""
        notifier = MQTTNotifier(notify_config)

        assert notifier.notify("device-1", {"event": "change"}) is False
        mock_paho.publish.assert_not_called()

    def test_notify_publishes_json(self, notify_config, mock_paho):
        """Test connected notifiers publish a JSON summary at QoS 1."""
        mock_paho.publish.return_value = MagicMock(rc=mqtt.MQTT_ERR_SUCCESS)
        notifier = MQTTNotifier(notify_config)
        notifier._handle_connect(mock_paho, None, None, 0)

        summary = {"event": "change", "entityId": "R1", "version": 2}
        assert notifier.notify("device-1", summary) is True

        topic, payload = mock_paho.publish.call_args.args
        assert topic == "kitchen/devices/device-1"
        assert json.loads(payload) == summary
        assert mock_paho.publish.call_args.kwargs["qos"] == 1

    def test_disconnect_callback(self, notify_config, mock_paho):
        """Test the disconnect callback clears the connected flag."""
        notifier = MQTTNotifier(notify_config)
        notifier._handle_connect(mock_paho, None, None, 0)
        assert notifier.is_connected

        notifier._handle_disconnect(mock_paho, None, None, 7)

        assert not notifier.is_connected

    def test_connect_failure(self, notify_config, mock_paho):
        """Test an unreachable broker reports failure."""
        mock_paho.connect.side_effect = OSError("connection refused")
        notifier = MQTTNotifier(notify_config)

        assert notifier.connect() is False

    def test_connect_with_credentials(self, mock_paho):
        """Test credentials are passed to the client."""
        config = NotificationConfig(enabled=True, username="sync", password="secret")
        notifier = MQTTNotifier(config, connect_timeout=0.05)

        notifier.connect()

        mock_paho.username_pw_set.assert_called_once_with("sync", "secret")
        mock_paho.loop_start.assert_called_once()


class TestCreateNotifier:
    def test_disabled(self):
        """Test disabled notifications use the null notifier."""
        assert isinstance(create_notifier(NotificationConfig()), NullNotifier)

    def test_enabled_even_if_unreachable(self, notify_config, mock_paho):
        """Test an unreachable broker still yields an MQTT notifier."""
        mock_paho.connect.side_effect = OSError("connection refused")

        notifier = create_notifier(notify_config)

        assert isinstance(notifier, MQTTNotifier)
