"""
Publishes command results back to the session topic.
"""

from __future__ import annotations

import logging
from typing import Protocol

from mqtterminal_agent.errors import PublishError
from mqtterminal_agent.executor import ExecutionResult
from mqtterminal_agent.protocol import QOS, OutgoingMessage, format_output

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    """Anything that can send an OutgoingMessage; raises PublishError on failure."""

    def publish(self, message: OutgoingMessage) -> None:
        ...


def build_output_message(topic: str, result: ExecutionResult, *, qos: int = QOS) -> OutgoingMessage:
    text = result.stdout if result.success else result.stderr
    return OutgoingMessage(topic=topic, payload=format_output(text), qos=qos)


class OutputPublisher:
    def __init__(self, sink: MessageSink, topic: str, *, qos: int = QOS) -> None:
        self.sink = sink
        self.topic = topic
        self.qos = qos

    def publish_result(self, result: ExecutionResult) -> bool:
        """
        Send stdout (success) or stderr (failure) as an OUTPUT/ message.

        Publish failures are logged and reported as False; they never end
        the session.
        """
        message = build_output_message(self.topic, result, qos=self.qos)
        if result.success:
            logger.debug("Command succeeded, sending stdout...")
        else:
            logger.debug("Command failed, sending stderr...")
        try:
            self.sink.publish(message)
        except PublishError as exc:
            logger.error("Failed to send output: %s", exc)
            return False
        logger.debug("Successfully sent output")
        return True
