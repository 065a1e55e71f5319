"""
Pytest configuration and shared fixtures
"""
import os
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mqtterminal_agent.config import BrokerAddress, RetryPolicy  # noqa: E402
from mqtterminal_agent.mqtt_client import SessionSettings  # noqa: E402


@pytest.fixture
def mock_env(monkeypatch):
    """Set up mock environment variables"""
    env_vars = {
        'MQTTERMINAL_BROKER_URL': 'tcp://test.mqtt.local:1883',
        'MQTTERMINAL_CLIENT_ID': 'test-agent',
        'MQTTERMINAL_TOPIC': 'test/terminal',
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.connect.return_value = 0
    fake.reconnect.return_value = 0
    fake.disconnect.return_value = 0
    fake.subscribe.return_value = (0, 1)
    fake.unsubscribe.return_value = (0, 2)
    fake.publish.return_value = SimpleNamespace(rc=0, mid=3)
    fake.ctor_calls = []

    def _ctor(*args, **kwargs):
        fake.ctor_calls.append((args, kwargs))
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def settings():
    return SessionSettings(
        broker=BrokerAddress(host="localhost", port=1883, tls=False),
        client_id="agent-1",
        topic="lab/terminal",
        keepalive_s=20,
        connect_timeout_s=0.2,
    )


@pytest.fixture
def sleeps():
    """Records sleep() calls instead of sleeping."""
    return []


@pytest.fixture
def manager(fake_paho_client, settings, sleeps):
    from mqtterminal_agent.mqtt_client import ConnectionManager

    return ConnectionManager(
        settings,
        RetryPolicy(max_attempts=12, delay_s=5.0),
        sleep=sleeps.append,
    )
