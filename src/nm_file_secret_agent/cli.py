"""Command line entry point.

Usage:
    nm-file-secret-agent --conf /etc/nm-file-secret-agent/config.toml
    nm-file-secret-agent -c config.yaml -v      # debug logging
    nm-file-secret-agent -c config.toml -qq     # errors only

Exit codes:
    0: clean shutdown (SIGTERM / SIGINT)
    1: the configuration or environment settings are invalid
    2: invalid command line usage
"""

import argparse
import logging
import signal
import sys

from . import __version__
from .config import ConfigError, load_rule_set
from .logging_utils import configure_logging, log_error
from .session import AgentSession, RetryBackoff
from .settings import AgentSettings

logger = logging.getLogger("nm-file-secret-agent")

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nm-file-secret-agent",
        description="Small NetworkManager secret agent that responds with the content of preconfigured files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "-c",
        "--conf",
        dest="config",
        required=True,
        help="Path to a config file (TOML, or YAML with a .yaml/.yml suffix)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase program verbosity (default level: INFO)",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease program verbosity (default level: INFO)",
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def install_signal_handlers(session: AgentSession) -> None:
    """Request a clean shutdown on SIGTERM and SIGINT."""

    def _handler(signum, frame):
        logger.info("Received %s, shutting down...", signal.Signals(signum).name)
        session.request_shutdown()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the agent."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        rules = load_rule_set(args.config)
        settings = AgentSettings.from_env()
    except ConfigError as e:
        log_error(logger, "Invalid configuration; not starting", config=args.config, error=e)
        return EXIT_CONFIG_ERROR

    # Imported here so that configuration problems are reported without touching D-Bus
    from .transport.dbus_transport import DBusManagerTransport

    transport = DBusManagerTransport(bus=settings.bus, call_timeout=settings.call_timeout)
    session = AgentSession(
        transport,
        rules,
        identity=settings.identity,
        backoff=RetryBackoff(initial=settings.backoff_initial, maximum=settings.backoff_max),
        poll_interval=settings.poll_interval,
    )
    install_signal_handlers(session)

    logger.info("Starting secret agent %s on the %s bus", settings.identity, settings.bus)
    session.run()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
