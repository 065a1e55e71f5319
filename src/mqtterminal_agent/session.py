"""
Session loop: takes inbound events one at a time and routes them.

message          -> parse -> execute -> publish
no message, lost -> reconnect (break when exhausted)
no message, up   -> nothing to do, wait again
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

from mqtterminal_agent.executor import CommandExecutor
from mqtterminal_agent.protocol import IncomingMessage, parse_command
from mqtterminal_agent.publisher import OutputPublisher

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    def next_event(self, timeout: Optional[float] = None) -> Optional[IncomingMessage]:
        ...

    def is_connected(self) -> bool:
        ...

    def reconnect(self) -> bool:
        ...


class SessionLoop:
    def __init__(
        self,
        connection: EventSource,
        executor: CommandExecutor,
        publisher: OutputPublisher,
        *,
        shutdown: Optional[threading.Event] = None,
        poll_interval_s: float = 0.5,
    ) -> None:
        self.connection = connection
        self.executor = executor
        self.publisher = publisher
        self.shutdown = shutdown or threading.Event()
        self.poll_interval_s = poll_interval_s

    def handle_message(self, msg: IncomingMessage) -> bool:
        """Run a command message and publish its output. Returns False for non-commands."""
        command = parse_command(msg.payload)
        if command is None:
            return False
        logger.info("Received command: %s", command)
        result = self.executor.run(command)
        self.publisher.publish_result(result)
        return True

    def run(self) -> None:
        """
        Process events until shutdown is requested or reconnection is exhausted.

        Fatal errors from parsing or execution propagate to the caller.
        """
        logger.info("Started processing requests...")
        while not self.shutdown.is_set():
            msg = self.connection.next_event(timeout=self.poll_interval_s)
            if msg is not None:
                self.handle_message(msg)
            elif not self.connection.is_connected():
                if not self.connection.reconnect():
                    break
        logger.info("Stopped processing requests")
