"""
Resolve and apply the agent log level.

Single log level for the whole process. The -v count from the command line
takes precedence over MQTTERMINAL_LOG_LEVEL; without either, WARNING.
"""

from __future__ import annotations

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.WARNING
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    level = getattr(logging, raw, None)
    # logging also exposes non-level names such as BASIC_FORMAT
    if not isinstance(level, int):
        return logging.WARNING
    return level


def level_from_verbosity(verbosity: int) -> int:
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def resolve_level(verbosity: int, env_level: Optional[str]) -> int:
    """
    Resolve log level: -v count if given, else env_level if set, else WARNING.
    """
    if verbosity > 0:
        return level_from_verbosity(verbosity)
    if env_level:
        return _parse_level(env_level)
    return logging.WARNING


def apply_log_level(level: int) -> None:
    """Set root logger level so every module logger uses it."""
    logging.getLogger().setLevel(level)


def configure_logging(verbosity: int = 0, env_level: Optional[str] = None) -> None:
    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
    apply_log_level(resolve_level(verbosity, env_level))
