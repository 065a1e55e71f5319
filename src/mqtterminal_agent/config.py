"""
Agent configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files, and may be overridden by CLI flags.

Priority (lowest -> highest):
1) /etc/mqtterminal/agent.env (system install)
2) ~/.config/mqtterminal-agent/.env (user install)
3) ./.env (project override)
4) process environment variables
5) command-line flags (passed to load_config as overrides)
"""

from __future__ import annotations

import os
import sys
import uuid
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv

DEFAULT_BROKER_URL = "tcp://broker.hivemq.com:1883"
DEFAULT_KEEPALIVE_S = 20
DEFAULT_RECONNECT_ATTEMPTS = 12
DEFAULT_RECONNECT_DELAY_S = 5.0
DEFAULT_CONNECT_TIMEOUT_S = 5.0

_PLAIN_SCHEMES = {"tcp": 1883, "mqtt": 1883}
_TLS_SCHEMES = {"ssl": 8883, "mqtts": 8883}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def get_version_string() -> str:
    try:
        return _pkg_version("mqtterminal-agent")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/mqtterminal/agent.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "mqtterminal-agent" / ".env"

    # 3) project override
    yield Path(".env")


def _optional_env(key: str) -> Optional[str]:
    v = os.getenv(key)
    if v is None or v == "":
        return None
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class BrokerAddress:
    host: str
    port: int
    tls: bool

    def __str__(self) -> str:
        scheme = "ssl" if self.tls else "tcp"
        return f"{scheme}://{self.host}:{self.port}"


def parse_broker_url(url: str) -> BrokerAddress:
    """
    Parse a broker URL such as tcp://broker.hivemq.com:1883.

    Accepted schemes: tcp, mqtt (plain) and ssl, mqtts (TLS). A bare host or
    host:port is treated as tcp. Raises ConfigError on anything else.
    """
    if not url or not url.strip():
        raise ConfigError("Broker URL must be non-empty")
    raw = url.strip()
    if "://" not in raw:
        raw = f"tcp://{raw}"

    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme in _PLAIN_SCHEMES:
        tls = False
        default_port = _PLAIN_SCHEMES[scheme]
    elif scheme in _TLS_SCHEMES:
        tls = True
        default_port = _TLS_SCHEMES[scheme]
    else:
        raise ConfigError(f"Unsupported broker URL scheme: {parts.scheme!r}")

    if not parts.hostname:
        raise ConfigError(f"Broker URL has no host: {url!r}")

    try:
        port = parts.port or default_port
    except ValueError as exc:
        raise ConfigError(f"Invalid port in broker URL: {url!r}") from exc

    return BrokerAddress(host=parts.hostname, port=port, tls=tls)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded reconnection policy: fixed delay before each attempt."""

    max_attempts: int = DEFAULT_RECONNECT_ATTEMPTS
    delay_s: float = DEFAULT_RECONNECT_DELAY_S


@dataclass(frozen=True, slots=True)
class AgentConfig:
    broker: BrokerAddress
    client_id: str
    topic: str
    username: Optional[str]
    password: Optional[str]
    keepalive_s: int
    connect_timeout_s: float
    retry: RetryPolicy
    command_timeout_s: float  # 0 disables
    log_level: Optional[str]
    agent_version: str


def load_config(
    *,
    broker_url: Optional[str] = None,
    client_id: Optional[str] = None,
    topic: Optional[str] = None,
    dotenv_enabled: bool = True,
) -> AgentConfig:
    """
    Load config by reading env files, applying CLI overrides and
    validating the result.

    Returns an immutable AgentConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    broker = parse_broker_url(
        broker_url or _optional_env("MQTTERMINAL_BROKER_URL") or DEFAULT_BROKER_URL
    )

    # Broker-wide unique; two agents sharing an id kick each other off.
    client_id = client_id or _optional_env("MQTTERMINAL_CLIENT_ID") or str(uuid.uuid4())

    topic = topic or _optional_env("MQTTERMINAL_TOPIC")
    if not topic:
        raise ConfigError("A topic is required (--topic or MQTTERMINAL_TOPIC)")
    if any(c in topic for c in "+#"):
        raise ConfigError(f"Topic must not contain wildcards: {topic!r}")

    keepalive_s = _parse_int(
        "MQTTERMINAL_KEEPALIVE", os.getenv("MQTTERMINAL_KEEPALIVE", str(DEFAULT_KEEPALIVE_S))
    )
    if keepalive_s <= 0:
        raise ConfigError("MQTTERMINAL_KEEPALIVE must be > 0")

    attempts = _parse_int(
        "MQTTERMINAL_RECONNECT_ATTEMPTS",
        os.getenv("MQTTERMINAL_RECONNECT_ATTEMPTS", str(DEFAULT_RECONNECT_ATTEMPTS)),
    )
    if attempts < 0:
        raise ConfigError("MQTTERMINAL_RECONNECT_ATTEMPTS must be >= 0")

    delay_s = _parse_float(
        "MQTTERMINAL_RECONNECT_DELAY",
        os.getenv("MQTTERMINAL_RECONNECT_DELAY", str(DEFAULT_RECONNECT_DELAY_S)),
    )
    if delay_s < 0:
        raise ConfigError("MQTTERMINAL_RECONNECT_DELAY must be >= 0")

    command_timeout_s = _parse_float(
        "MQTTERMINAL_COMMAND_TIMEOUT", os.getenv("MQTTERMINAL_COMMAND_TIMEOUT", "0")
    )
    if command_timeout_s < 0:
        raise ConfigError("MQTTERMINAL_COMMAND_TIMEOUT must be >= 0 (0 disables)")

    return AgentConfig(
        broker=broker,
        client_id=client_id,
        topic=topic,
        username=_optional_env("MQTTERMINAL_USERNAME"),
        password=_optional_env("MQTTERMINAL_PASSWORD"),
        keepalive_s=keepalive_s,
        connect_timeout_s=DEFAULT_CONNECT_TIMEOUT_S,
        retry=RetryPolicy(max_attempts=attempts, delay_s=delay_s),
        command_timeout_s=command_timeout_s,
        log_level=_optional_env("MQTTERMINAL_LOG_LEVEL"),
        agent_version=get_version_string(),
    )
