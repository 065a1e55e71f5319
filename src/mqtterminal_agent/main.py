"""
MQTTerminal Agent entrypoint.

CLI:
  mqtterminal-agent -t <topic> [-b <broker url>] [-n <client name>] [-v...]

Exit status: 0 on graceful shutdown or after reconnection is exhausted,
1 on any fatal error, 2 on invalid arguments or configuration.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from mqtterminal_agent.config import DEFAULT_BROKER_URL, ConfigError, get_version_string, load_config
from mqtterminal_agent.errors import AgentError
from mqtterminal_agent.log_config import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


@dataclass
class Runtime:
    shutdown: threading.Event
    connection: Optional[object] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_agent(args: argparse.Namespace) -> int:
    """
    Runtime mode: connect, serve commands until shutdown, tear down.
    The only place errors are mapped to a process exit code.
    """
    from mqtterminal_agent.executor import CommandExecutor
    from mqtterminal_agent.mqtt_client import ConnectionManager, SessionSettings
    from mqtterminal_agent.publisher import OutputPublisher
    from mqtterminal_agent.session import SessionLoop

    try:
        cfg = load_config(
            broker_url=args.broker_url,
            client_id=args.client_name,
            topic=args.topic,
        )
    except ConfigError as exc:
        configure_logging(args.verbose)
        logger.error("Invalid configuration: %s", exc)
        return EXIT_USAGE

    configure_logging(args.verbose, cfg.log_level)

    settings = SessionSettings.from_config(cfg)
    logger.info("--------------------------------")
    logger.info("* MQTTerminal Agent version %s", cfg.agent_version)
    logger.info("* Broker URL: %s", cfg.broker)
    logger.info("* Client ID: %s", cfg.client_id)
    logger.info("* Topic: %s", cfg.topic)
    logger.info("* QOS: %s", settings.qos)
    logger.warning("* Be careful when using public/unauthenticated brokers for MQTTerminal!!!")
    logger.info("--------------------------------")

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    connection = ConnectionManager(settings, cfg.retry)
    rt.connection = connection
    loop = SessionLoop(
        connection,
        CommandExecutor(timeout_s=cfg.command_timeout_s),
        OutputPublisher(connection, cfg.topic, qos=settings.qos),
        shutdown=rt.shutdown,
    )

    code = EXIT_OK
    try:
        connection.connect()
        loop.run()
    except AgentError as exc:
        logger.critical("%s", exc)
        code = EXIT_FAILURE if exc.fatal else EXIT_OK
    finally:
        if not _shutdown(rt):
            code = EXIT_FAILURE

    return code


def _shutdown(rt: Runtime) -> bool:
    """Tear down the broker session. Returns False if teardown failed."""
    logger.info("Shutting down...")
    if rt.connection is None:
        return True
    try:
        rt.connection.shutdown()
    except AgentError as exc:
        logger.critical("%s", exc)
        return False
    return True


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mqtterminal-agent",
        description="Execute shell commands received over MQTT and publish their output.",
    )
    p.add_argument("--version", action="version", version=get_version_string())
    p.add_argument(
        "-b",
        "--broker-url",
        metavar="BROKER_URL",
        help=f"Broker to connect to (default: {DEFAULT_BROKER_URL})",
    )
    p.add_argument(
        "-n",
        "--client-name",
        metavar="CLIENT_NAME",
        help="Client name when connecting to the broker, must be unique (default: random UUIDv4)",
    )
    p.add_argument(
        "-t",
        "--topic",
        metavar="TOPIC",
        help=(
            "Topic for publishing/subscription (or MQTTERMINAL_TOPIC). "
            "On public brokers, anyone using this topic can send commands."
        ),
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug)",
    )
    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    raise SystemExit(run_agent(args))


if __name__ == "__main__":
    main()
