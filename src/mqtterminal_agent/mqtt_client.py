"""
MQTT connection manager for the agent.

Owns the broker session: connect with last will, subscribe, turn paho callbacks
into a queue of inbound events, reconnect with a bounded retry policy and tear
the session down gracefully.

States: DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> TERMINATED.
"""

from __future__ import annotations

import enum
import logging
import queue
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from mqtterminal_agent.config import AgentConfig, BrokerAddress, RetryPolicy
from mqtterminal_agent.errors import BrokerConnectionError, PublishError, TeardownError
from mqtterminal_agent.protocol import LAST_WILL_PAYLOAD, QOS, IncomingMessage, OutgoingMessage

logger = logging.getLogger(__name__)

_POLL_INTERVAL_S = 0.1


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class SessionSettings:
    """Broker session parameters, fixed for the lifetime of the process."""

    broker: BrokerAddress
    client_id: str
    topic: str
    keepalive_s: int
    connect_timeout_s: float
    username: Optional[str] = None
    password: Optional[str] = None
    qos: int = QOS
    clean_session: bool = False
    will_payload: str = LAST_WILL_PAYLOAD

    @classmethod
    def from_config(cls, cfg: AgentConfig) -> "SessionSettings":
        return cls(
            broker=cfg.broker,
            client_id=cfg.client_id,
            topic=cfg.topic,
            keepalive_s=cfg.keepalive_s,
            connect_timeout_s=cfg.connect_timeout_s,
            username=cfg.username,
            password=cfg.password,
        )


def _ok(rc: Any) -> bool:
    return rc == mqtt.MQTT_ERR_SUCCESS


class ConnectionManager:
    """
    Single owner of the paho client.

    paho's network thread only enqueues events; everything else (subscribe,
    reconnect, publish, teardown) runs on the caller's thread, one operation
    at a time.
    """

    def __init__(
        self,
        settings: SessionSettings,
        retry: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

        self._client: Optional[mqtt.Client] = None
        self._events: "queue.Queue[Optional[IncomingMessage]]" = queue.Queue()
        self.state = ConnectionState.DISCONNECTED

    @property
    def topic(self) -> str:
        return self.settings.topic

    # -------------------------
    # paho callbacks (network thread)
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connect refused: %s", reason_code)
            return
        logger.debug("Broker acknowledged connection (session present: %s)", getattr(flags, "session_present", None))

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code.is_failure:
            logger.warning("Unexpected disconnect: %s", reason_code)
        else:
            logger.debug("Disconnected: %s", reason_code)
        # Wake the session loop so it re-checks the connection.
        self._events.put(None)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._events.put(IncomingMessage(topic=msg.topic, payload=bytes(msg.payload)))

    # -------------------------
    # Lifecycle
    # -------------------------
    def _build_client(self) -> mqtt.Client:
        s = self.settings
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=s.client_id,
            clean_session=s.clean_session,
            protocol=mqtt.MQTTv311,
        )
        if s.username:
            client.username_pw_set(s.username, s.password)
        if s.broker.tls:
            client.tls_set()

        # Broker publishes this on our behalf if the session drops uncleanly.
        client.will_set(s.topic, payload=s.will_payload, qos=s.qos, retain=False)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _wait_connected(self, client: mqtt.Client) -> bool:
        attempts = max(1, int(self.settings.connect_timeout_s / _POLL_INTERVAL_S))
        for _ in range(attempts):
            if client.is_connected():
                return True
            time.sleep(_POLL_INTERVAL_S)
        return client.is_connected()

    def _subscribe(self, client: mqtt.Client) -> None:
        topic = self.settings.topic
        try:
            rc, _mid = client.subscribe(topic, qos=self.settings.qos)
        except ValueError as exc:
            raise BrokerConnectionError(f"Failed to subscribe to topic {topic}: {exc}") from exc
        if not _ok(rc):
            raise BrokerConnectionError(
                f"Failed to subscribe to topic {topic}: {mqtt.error_string(rc)}"
            )
        logger.info("Subscribed: %s (qos=%s)", topic, self.settings.qos)

    def connect(self) -> None:
        """
        Connect, wait for the broker acknowledgement and subscribe.

        Raises BrokerConnectionError on any failure.
        """
        s = self.settings
        self.state = ConnectionState.CONNECTING
        client = self._client = self._build_client()

        logger.info("Connecting to the MQTT broker %s...", s.broker)
        try:
            rc = client.connect(s.broker.host, s.broker.port, keepalive=s.keepalive_s)
        except (OSError, ValueError) as exc:
            self.state = ConnectionState.DISCONNECTED
            raise BrokerConnectionError(f"Unable to connect to broker {s.broker}: {exc}") from exc
        if not _ok(rc):
            self.state = ConnectionState.DISCONNECTED
            raise BrokerConnectionError(
                f"Unable to connect to broker {s.broker}: {mqtt.error_string(rc)}"
            )

        client.loop_start()
        if not self._wait_connected(client):
            client.loop_stop()
            self.state = ConnectionState.DISCONNECTED
            raise BrokerConnectionError(
                f"Broker {s.broker} did not accept the connection within {s.connect_timeout_s}s"
            )
        logger.debug("Successfully connected to the MQTT broker")

        self._subscribe(client)
        self.state = ConnectionState.CONNECTED

    def _try_reconnect(self, client: mqtt.Client) -> bool:
        try:
            rc = client.reconnect()
        except (OSError, ValueError) as exc:
            logger.debug("Reconnect failed: %s", exc)
            return False
        if not _ok(rc):
            logger.debug("Reconnect failed: %s", mqtt.error_string(rc))
            return False

        client.loop_start()
        if not self._wait_connected(client):
            client.loop_stop()
            return False
        return True

    def reconnect(self) -> bool:
        """
        Retry the broker connection according to the retry policy.

        Returns True once reconnected and resubscribed, False when every attempt
        failed (state becomes TERMINATED). Raises BrokerConnectionError if the
        resubscribe after a successful reconnect fails.
        """
        client = self._client
        if client is None:
            raise BrokerConnectionError("reconnect() called before connect()")

        self.state = ConnectionState.RECONNECTING
        logger.warning("Connection lost. Will retry reconnection...")

        # Stop paho's own reconnect loop; retries follow our policy.
        client.loop_stop()

        for attempt in range(1, self.retry.max_attempts + 1):
            self._sleep(self.retry.delay_s)
            logger.info("Retrying connection (attempt #%d)", attempt)
            if self._try_reconnect(client):
                logger.info("Successfully reconnected!")
                logger.info("Resubscribing...")
                self._subscribe(client)
                self.state = ConnectionState.CONNECTED
                return True

        logger.critical("Unable to reconnect after %d attempts", self.retry.max_attempts)
        self.state = ConnectionState.TERMINATED
        return False

    def shutdown(self) -> None:
        """
        Graceful teardown: unsubscribe then disconnect, only while connected.

        Raises TeardownError if either step fails.
        """
        client = self._client
        if client is None:
            return
        try:
            if client.is_connected():
                logger.info("Disconnecting...")
                topic = self.settings.topic
                rc, _mid = client.unsubscribe(topic)
                if not _ok(rc):
                    raise TeardownError(f"Failed to unsubscribe from {topic}: {mqtt.error_string(rc)}")
                logger.debug("Successfully unsubscribed")

                rc = client.disconnect()
                if not _ok(rc):
                    raise TeardownError(f"Failed to disconnect from broker: {mqtt.error_string(rc)}")
                logger.debug("Successfully disconnected from broker")
        finally:
            client.loop_stop()
            self.state = ConnectionState.TERMINATED

    # -------------------------
    # Steady state
    # -------------------------
    def next_event(self, timeout: Optional[float] = None) -> Optional[IncomingMessage]:
        """
        Next inbound message, or None when woken without one (timeout or
        disconnect); callers then check is_connected().
        """
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected())

    def publish(self, message: OutgoingMessage) -> None:
        if not self._client:
            raise PublishError("MQTT client not connected")
        try:
            info = self._client.publish(message.topic, payload=message.payload, qos=message.qos)
        except (ValueError, RuntimeError) as exc:
            raise PublishError(str(exc)) from exc
        if not _ok(info.rc):
            raise PublishError(mqtt.error_string(info.rc))
