"""
MQTTerminal wire protocol.

Everything travels as text on one topic:
  inbound command:  COMMAND/<shell command text>
  outbound result:  OUTPUT/<stdout on success, stderr on failure>
  last will:        Server has lost connection

QoS is fixed at 2 for subscribe, publish and will. Payloads without the
command prefix are other traffic on the topic (including our own OUTPUT/
messages) and are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from mqtterminal_agent.errors import ProtocolError

QOS = 2
COMMAND_PREFIX = "COMMAND/"
OUTPUT_PREFIX = "OUTPUT/"
LAST_WILL_PAYLOAD = "Server has lost connection"

_COMMAND_PREFIX_BYTES = COMMAND_PREFIX.encode("utf-8")


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    topic: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    topic: str
    payload: str
    qos: int = QOS


def is_command(payload: bytes) -> bool:
    return payload.startswith(_COMMAND_PREFIX_BYTES)


def parse_command(payload: bytes) -> Optional[str]:
    """
    Return the command text carried by payload, or None if it is not a command.

    The remainder after the prefix is decoded leniently: invalid UTF-8 bytes
    become U+FFFD and the command still runs. Raises ProtocolError only when
    payload is not a byte string at all.
    """
    if not isinstance(payload, (bytes, bytearray)):
        raise ProtocolError(f"Payload must be bytes, got {type(payload).__name__}")
    if not is_command(payload):
        return None
    body = payload[len(_COMMAND_PREFIX_BYTES):]
    return body.decode("utf-8", errors="replace")


def format_output(text: str) -> str:
    return f"{OUTPUT_PREFIX}{text}"
