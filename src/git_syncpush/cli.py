import argparse
import asyncio
import logging
import sys
from importlib.metadata import PackageNotFoundError, version

from rich.console import Console

from . import daemon
from .config import Settings, mask_url
from .constants import APP_NAME, ENV_PREFIX
from .errors import ConfigError, SetupError, SignalRegistrationError
from .health import ProbeServer, ReadinessGate

logger = logging.getLogger(APP_NAME)
err_console = Console(stderr=True)


def _version() -> str:
    try:
        return version(APP_NAME)
    except PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    """Builds the argument parser.

    Every option defaults to None so that `Settings.load` can fall back to the
    environment and the config file.
    """
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description=(
            "Periodically snapshot a working tree into git history and push it "
            "to a remote, exposing a readiness probe."
        ),
        epilog=f"Every option can also be set through {ENV_PREFIX}<OPTION> "
        f"environment variables (e.g. {ENV_PREFIX}PERIOD).",
    )
    parser.add_argument("--version", action="version", version=_version())

    parser.add_argument("--repo", help="Remote repository address")
    parser.add_argument("--path", help="Local path to materialize the working tree")
    parser.add_argument(
        "--period", help="Sync period as a human-readable duration (e.g. '5m')"
    )
    parser.add_argument("--author-name", help="Author and committer name")
    parser.add_argument("--author-email", help="Author and committer email")
    parser.add_argument("--username", help="Remote username")
    parser.add_argument(
        "password",
        nargs="?",
        help=f"Remote password (prefer the {ENV_PREFIX}PASSWORD variable)",
    )
    parser.add_argument(
        "--http-bind", help="Bind address of the readiness probe (host:port)"
    )
    parser.add_argument("--config", help="Optional TOML config file")
    parser.add_argument(
        "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR; default INFO)"
    )
    parser.add_argument("--log-file", help="Also write logs to this rotating file")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the git-syncpush agent.

    Exits with 2 on invalid settings, 1 on a fatal setup or signal error, and
    0 after a graceful shutdown.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings.load(args)
    except ConfigError as e:
        parser.error(str(e))

    daemon.setup_logging(
        settings.logging.level,
        settings.logging.file,
        settings.logging.max_log_size,
    )
    for warning in settings.warnings:
        logger.warning(warning)
    logger.debug(f"{settings!r}")
    logger.info(
        f"Starting {APP_NAME} for {mask_url(settings.repo)} "
        f"(period {settings.period:g}s)"
    )

    readiness = ReadinessGate()
    probe = ProbeServer(settings.http_bind, readiness)

    try:
        probe.start()
        asyncio.run(daemon.run(settings, readiness))
    except (SetupError, SignalRegistrationError) as e:
        logger.critical(f"FATAL: {e}")
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        sys.exit(1)
    finally:
        probe.stop()

    logger.info("Shutdown complete.")


if __name__ == "__main__":
    main()
