"""
Error taxonomy for the agent.

Components raise these; only the entrypoint (main.run_agent) maps them to a
process exit status. `fatal` tells the entrypoint whether the error ends the
process.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for agent errors."""

    fatal: bool = True


class BrokerConnectionError(AgentError):
    """Connect, subscribe or resubscribe failed."""


class ProtocolError(AgentError):
    """A payload carrying the command prefix could not be turned into command text."""


class ExecutionError(AgentError):
    """The shell process could not be spawned."""


class OutputEncodingError(AgentError):
    """Captured command output is not valid UTF-8."""


class PublishError(AgentError):
    """Publishing an output message failed."""

    fatal = False


class TeardownError(AgentError):
    """Unsubscribe or disconnect failed during graceful shutdown."""
