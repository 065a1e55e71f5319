"""
Shell command execution.

A ShellBackend turns command text into the argv of the host command
interpreter; CommandExecutor runs it and captures both streams and the exit
status. Output is decoded as strict UTF-8.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional, Protocol

from mqtterminal_agent.errors import ExecutionError, OutputEncodingError

logger = logging.getLogger(__name__)


class ShellBackend(Protocol):
    """Builds the argv that runs a command string in a platform shell."""

    name: str

    def argv(self, command: str) -> list[str]:
        ...


@dataclass(frozen=True, slots=True)
class PosixShell:
    name: str = "sh"

    def argv(self, command: str) -> list[str]:
        return [self.name, "-c", command]


@dataclass(frozen=True, slots=True)
class WindowsShell:
    name: str = "cmd"

    def argv(self, command: str) -> list[str]:
        return [self.name, "/C", command]


def default_shell(platform: Optional[str] = None) -> ShellBackend:
    platform = platform or sys.platform
    if platform == "win32":
        return WindowsShell()
    return PosixShell()


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    stdout: str
    stderr: str
    returncode: int

    @property
    def success(self) -> bool:
        return self.returncode == 0


def _decode(stream: str, data: Optional[bytes], command: str) -> str:
    if not data:
        return ""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise OutputEncodingError(
            f"Failed to decode {stream} for command {command!r}: {exc}"
        ) from exc


class CommandExecutor:
    """
    Runs one command at a time in the configured shell.

    timeout_s=0 means no timeout: a hung command blocks the caller until it
    exits. With a timeout, the process is killed and a failed result with a
    timeout notice on stderr is returned.
    """

    def __init__(self, shell: Optional[ShellBackend] = None, *, timeout_s: float = 0) -> None:
        self.shell = shell or default_shell()
        self.timeout_s = timeout_s

    def run(self, command: str) -> ExecutionResult:
        argv = self.shell.argv(command)
        logger.debug("Executing via %s: %s", self.shell.name, command)
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                timeout=self.timeout_s or None,
            )
        except subprocess.TimeoutExpired as exc:
            logger.warning("Command timed out after %ss: %s", self.timeout_s, command)
            # The kill may cut a multi-byte character in half.
            stderr = (exc.stderr or b"").decode("utf-8", errors="replace")
            return ExecutionResult(
                stdout=(exc.stdout or b"").decode("utf-8", errors="replace"),
                stderr=f"{stderr}Command timed out after {self.timeout_s}s\n",
                returncode=-1,
            )
        except OSError as exc:
            raise ExecutionError(f"Failed to execute command {command!r}: {exc}") from exc

        result = ExecutionResult(
            stdout=_decode("stdout", proc.stdout, command),
            stderr=_decode("stderr", proc.stderr, command),
            returncode=proc.returncode,
        )
        logger.debug("Command exited with status %s", result.returncode)
        return result
