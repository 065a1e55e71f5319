from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

from mqtterminal_agent.config import BrokerAddress, RetryPolicy
from mqtterminal_agent.errors import BrokerConnectionError, PublishError, TeardownError
from mqtterminal_agent.mqtt_client import ConnectionManager, ConnectionState
from mqtterminal_agent.protocol import LAST_WILL_PAYLOAD, OutgoingMessage


class FakeReasonCode:
    def __init__(self, value: int = 0):
        self.value = value
        self.is_failure = value >= 0x80

    def __str__(self):
        return f"rc={self.value}"


class FakeMQTTMessage:
    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload


def test_connect_sets_session_options_and_subscribes(manager, fake_paho_client):
    manager.connect()

    (args, kwargs), = fake_paho_client.ctor_calls
    assert args[0] == mqtt.CallbackAPIVersion.VERSION2
    assert kwargs["client_id"] == "agent-1"
    assert kwargs["clean_session"] is False

    fake_paho_client.will_set.assert_called_once_with(
        "lab/terminal", payload=LAST_WILL_PAYLOAD, qos=2, retain=False
    )
    fake_paho_client.connect.assert_called_once_with("localhost", 1883, keepalive=20)
    fake_paho_client.loop_start.assert_called_once()
    fake_paho_client.subscribe.assert_called_once_with("lab/terminal", qos=2)
    fake_paho_client.tls_set.assert_not_called()
    assert manager.state is ConnectionState.CONNECTED


def test_connect_uses_tls_and_credentials_when_configured(fake_paho_client, settings):
    from dataclasses import replace

    tls_settings = replace(
        settings,
        broker=BrokerAddress(host="secure.local", port=8883, tls=True),
        username="user",
        password="pw",
    )
    ConnectionManager(tls_settings).connect()

    fake_paho_client.tls_set.assert_called_once()
    fake_paho_client.username_pw_set.assert_called_once_with("user", "pw")
    fake_paho_client.connect.assert_called_once_with("secure.local", 8883, keepalive=20)


def test_connect_socket_error_raises(manager, fake_paho_client):
    fake_paho_client.connect.side_effect = ConnectionRefusedError("refused")

    with pytest.raises(BrokerConnectionError) as exc:
        manager.connect()

    assert "Unable to connect" in str(exc.value)
    assert manager.state is ConnectionState.DISCONNECTED
    fake_paho_client.subscribe.assert_not_called()


def test_connect_without_ack_raises(manager, fake_paho_client):
    fake_paho_client.is_connected.return_value = False

    with pytest.raises(BrokerConnectionError):
        manager.connect()

    fake_paho_client.loop_stop.assert_called_once()
    fake_paho_client.subscribe.assert_not_called()


def test_subscribe_failure_raises(manager, fake_paho_client):
    fake_paho_client.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)

    with pytest.raises(BrokerConnectionError) as exc:
        manager.connect()

    assert "Failed to subscribe to topic lab/terminal" in str(exc.value)


def test_on_message_enqueues_incoming_message(manager, fake_paho_client):
    manager._on_message(fake_paho_client, None, FakeMQTTMessage("lab/terminal", b"COMMAND/ls"))

    msg = manager.next_event(timeout=0)
    assert msg.topic == "lab/terminal"
    assert msg.payload == b"COMMAND/ls"


def test_next_event_returns_none_when_idle(manager):
    assert manager.next_event(timeout=0.01) is None


def test_on_disconnect_wakes_event_consumer(manager, fake_paho_client):
    manager._on_disconnect(fake_paho_client, None, None, FakeReasonCode(0x80), None)

    assert manager.next_event(timeout=0.01) is None
    assert manager._events.empty()


def test_reconnect_succeeds_on_third_attempt(manager, fake_paho_client, sleeps, caplog):
    manager.connect()
    fake_paho_client.subscribe.reset_mock()
    fake_paho_client.reconnect.side_effect = [OSError("down"), OSError("down"), 0]

    with caplog.at_level("INFO", logger="mqtterminal_agent.mqtt_client"):
        assert manager.reconnect() is True

    assert fake_paho_client.reconnect.call_count == 3
    assert sleeps == [5.0, 5.0, 5.0]
    fake_paho_client.subscribe.assert_called_once_with("lab/terminal", qos=2)
    attempts = [r.getMessage() for r in caplog.records if "Retrying connection" in r.getMessage()]
    assert attempts == [
        "Retrying connection (attempt #1)",
        "Retrying connection (attempt #2)",
        "Retrying connection (attempt #3)",
    ]
    assert manager.state is ConnectionState.CONNECTED


def test_reconnect_treats_error_code_as_failed_attempt(manager, fake_paho_client, sleeps):
    manager.connect()
    fake_paho_client.reconnect.side_effect = [mqtt.MQTT_ERR_NO_CONN, 0]

    assert manager.reconnect() is True
    assert fake_paho_client.reconnect.call_count == 2


def test_reconnect_exhausts_after_max_attempts(manager, fake_paho_client, sleeps):
    manager.connect()
    fake_paho_client.subscribe.reset_mock()
    fake_paho_client.reconnect.side_effect = OSError("down")

    assert manager.reconnect() is False

    assert fake_paho_client.reconnect.call_count == 12
    assert len(sleeps) == 12
    assert all(s >= 5.0 for s in sleeps)
    fake_paho_client.subscribe.assert_not_called()
    assert manager.state is ConnectionState.TERMINATED


def test_reconnect_honours_injected_policy(fake_paho_client, settings):
    calls = []
    m = ConnectionManager(settings, RetryPolicy(max_attempts=2, delay_s=0), sleep=calls.append)
    m.connect()
    fake_paho_client.reconnect.side_effect = OSError("down")

    assert m.reconnect() is False
    assert calls == [0, 0]


def test_reconnect_resubscribe_failure_raises(manager, fake_paho_client):
    manager.connect()
    fake_paho_client.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)

    with pytest.raises(BrokerConnectionError):
        manager.reconnect()


def test_shutdown_unsubscribes_then_disconnects(manager, fake_paho_client):
    manager.connect()
    order = []
    fake_paho_client.unsubscribe.side_effect = lambda t: order.append(("unsubscribe", t)) or (0, 5)
    fake_paho_client.disconnect.side_effect = lambda: order.append(("disconnect",)) or 0

    manager.shutdown()

    assert order == [("unsubscribe", "lab/terminal"), ("disconnect",)]
    fake_paho_client.loop_stop.assert_called()
    assert manager.state is ConnectionState.TERMINATED


def test_shutdown_skips_teardown_when_disconnected(manager, fake_paho_client):
    manager.connect()
    fake_paho_client.is_connected.return_value = False

    manager.shutdown()

    fake_paho_client.unsubscribe.assert_not_called()
    fake_paho_client.disconnect.assert_not_called()


def test_shutdown_unsubscribe_failure_raises(manager, fake_paho_client):
    manager.connect()
    fake_paho_client.unsubscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)

    with pytest.raises(TeardownError):
        manager.shutdown()

    fake_paho_client.disconnect.assert_not_called()
    fake_paho_client.loop_stop.assert_called()


def test_shutdown_disconnect_failure_raises(manager, fake_paho_client):
    manager.connect()
    fake_paho_client.disconnect.return_value = mqtt.MQTT_ERR_NO_CONN

    with pytest.raises(TeardownError):
        manager.shutdown()


def test_publish_sends_with_message_qos(manager, fake_paho_client):
    manager.connect()

    manager.publish(OutgoingMessage(topic="lab/terminal", payload="OUTPUT/hi\n"))

    fake_paho_client.publish.assert_called_once_with("lab/terminal", payload="OUTPUT/hi\n", qos=2)


def test_publish_error_code_raises(manager, fake_paho_client):
    manager.connect()
    fake_paho_client.publish.return_value = SimpleNamespace(rc=mqtt.MQTT_ERR_NO_CONN, mid=1)

    with pytest.raises(PublishError):
        manager.publish(OutgoingMessage(topic="lab/terminal", payload="OUTPUT/x"))


def test_publish_before_connect_raises(manager):
    with pytest.raises(PublishError):
        manager.publish(OutgoingMessage(topic="lab/terminal", payload="OUTPUT/x"))


def test_reconnect_before_connect_raises(manager, fake_paho_client):
    with pytest.raises(BrokerConnectionError):
        manager.reconnect()

    fake_paho_client.reconnect.assert_not_called()
