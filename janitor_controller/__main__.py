"""
Standalone entrypoint for running the CI janitor watcher.

The watcher runs next to a CI runner and removes the containers, networks,
volumes and services a finished job leaves behind.

Usage:
    python -m janitor_controller [OPTIONS]
    ci-janitor [OPTIONS]  (after pip install)

Environment Variables:
    CI_JANITOR_CONFIG: Job pattern file (default: patterns/jobPattern.json)
    CI_JANITOR_INITIAL_DELAY: Seconds to wait before cleaning (default: 2.0)
    CI_JANITOR_POLL_INTERVAL: Seconds between container retries (default: 2.0)
    CI_JANITOR_MAX_RETRIES: Container cleanup attempts per run (default: 5)
    CI_JANITOR_STOP_TIMEOUT: Grace period for stopping containers (default: 10)
    CI_JANITOR_RECENT_WINDOW: Seconds; attribute recently created containers
        to the finished job (default: disabled)
    CI_JANITOR_COMPOSE_COMMAND: Compose teardown command (default: docker-compose down)
    CI_JANITOR_JOB_ID_LABELS: Comma separated job id label keys
"""

import argparse
import asyncio
import logging
import os
import shlex
import signal
import sys
from datetime import timedelta

from janitor_common.config import ReconcilerSettings, load_config
from janitor_common.errors import ConfigError, EngineError
from janitor_common.models import DEFAULT_JOB_ID_LABELS

from .classifier import JobPatternClassifier
from .compose import DEFAULT_COMPOSE_COMMAND, ComposeBridge
from .docker_engine import DockerEngine
from .reconciler import CleanupReconciler
from .watcher import JobWatcher

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "patterns/jobPattern.json"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="CI Janitor - remove resources left behind by finished CI jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  CI_JANITOR_CONFIG           Job pattern file (default: patterns/jobPattern.json)
  CI_JANITOR_INITIAL_DELAY    Seconds to wait before cleaning (default: 2.0)
  CI_JANITOR_POLL_INTERVAL    Seconds between container retries (default: 2.0)
  CI_JANITOR_MAX_RETRIES      Container cleanup attempts per run (default: 5)
  CI_JANITOR_STOP_TIMEOUT     Grace period for stopping containers (default: 10)
  CI_JANITOR_RECENT_WINDOW    Recency window in seconds (default: disabled)
  CI_JANITOR_COMPOSE_COMMAND  Compose teardown command (default: docker-compose down)
  CI_JANITOR_JOB_ID_LABELS    Comma separated job id label keys

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  ci-janitor

  # Use a custom pattern file and faster retries
  ci-janitor --config /etc/ci-janitor/jobPattern.json --poll-interval 1.0

  # Use the compose v2 plugin for teardown
  ci-janitor --compose-command "docker compose down"

  # Enable debug logging
  ci-janitor --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=f"Job pattern file (default: CI_JANITOR_CONFIG env or {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--initial-delay",
        type=float,
        default=None,
        help="Seconds to wait before cleaning (default: CI_JANITOR_INITIAL_DELAY env or 2.0)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between container retries (default: CI_JANITOR_POLL_INTERVAL env or 2.0)",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Container cleanup attempts per run (default: CI_JANITOR_MAX_RETRIES env or 5)",
    )
    parser.add_argument(
        "--stop-timeout",
        type=int,
        default=None,
        help="Grace period for stopping containers (default: CI_JANITOR_STOP_TIMEOUT env or 10)",
    )
    parser.add_argument(
        "--recent-window",
        type=float,
        default=None,
        help="Attribute containers created within this many seconds to the finished job "
        "(default: CI_JANITOR_RECENT_WINDOW env or disabled)",
    )
    parser.add_argument(
        "--compose-command",
        type=str,
        default=None,
        help="Compose teardown command (default: CI_JANITOR_COMPOSE_COMMAND env or "
        "'docker-compose down')",
    )
    parser.add_argument(
        "--no-compose",
        action="store_true",
        help="Never delegate teardown to compose",
    )
    parser.add_argument(
        "--job-id-label",
        action="append",
        default=None,
        help="Label key carrying the CI job id (repeatable)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def _number_setting(
    value: float | None, env_name: str, default: float, cast=float, minimum: float = 0
) -> float:
    """
    Resolve a numeric setting from CLI, environment or default.

    Values below minimum are rejected with a warning.
    """
    if value is None:
        raw = os.environ.get(env_name)
        if raw is None:
            return default
        try:
            value = cast(raw)
        except ValueError:
            logger.warning(f"Invalid {env_name}={raw}, using default {default}")
            return default

    if value < minimum:
        logger.warning(f"Invalid {env_name}={value}, using default {default}")
        return default
    return value


def get_config_path(args: argparse.Namespace) -> str:
    """Get the pattern file path from CLI args or environment or use default."""
    if args.config:
        return args.config
    return os.environ.get("CI_JANITOR_CONFIG", DEFAULT_CONFIG_PATH)


def get_recent_window(args: argparse.Namespace) -> timedelta | None:
    """Get the recency window; None (disabled) unless configured."""
    seconds = _number_setting(args.recent_window, "CI_JANITOR_RECENT_WINDOW", -1.0)
    if seconds <= 0:
        return None
    return timedelta(seconds=seconds)


def get_compose_command(args: argparse.Namespace) -> tuple[str, ...]:
    """Get the compose teardown command from CLI args or environment."""
    command = args.compose_command or os.environ.get("CI_JANITOR_COMPOSE_COMMAND")
    if not command:
        return DEFAULT_COMPOSE_COMMAND
    return tuple(shlex.split(command))


def get_job_id_labels(args: argparse.Namespace) -> tuple[str, ...]:
    """Get job id label keys from CLI args or environment."""
    if args.job_id_label:
        return tuple(args.job_id_label)
    raw = os.environ.get("CI_JANITOR_JOB_ID_LABELS")
    if raw:
        labels = tuple(label.strip() for label in raw.split(",") if label.strip())
        if labels:
            return labels
    return DEFAULT_JOB_ID_LABELS


def get_settings(args: argparse.Namespace) -> ReconcilerSettings:
    """Collect reconciler settings from CLI args and environment."""
    return ReconcilerSettings(
        initial_delay=_number_setting(
            args.initial_delay, "CI_JANITOR_INITIAL_DELAY", 2.0
        ),
        poll_interval=_number_setting(
            args.poll_interval, "CI_JANITOR_POLL_INTERVAL", 2.0
        ),
        max_retries=int(
            _number_setting(args.max_retries, "CI_JANITOR_MAX_RETRIES", 5, int, 1)
        ),
        stop_timeout=int(
            _number_setting(args.stop_timeout, "CI_JANITOR_STOP_TIMEOUT", 10, int)
        ),
        recent_window=get_recent_window(args),
        job_id_labels=get_job_id_labels(args),
        compose_command=get_compose_command(args),
    )


async def run_watcher(args: argparse.Namespace) -> None:
    """
    Initialize and run the job watcher.

    Args:
        args: Parsed command-line arguments

    Runs until SIGINT or SIGTERM is received or the event feed breaks.

    Raises:
        ConfigError: If the pattern file is missing or malformed
        EngineError: If the docker daemon is unreachable
    """
    config_path = get_config_path(args)
    settings = get_settings(args)

    logger.info("Starting CI Janitor")
    logger.info(f"  Pattern file: {config_path}")
    logger.info(f"  Initial delay: {settings.initial_delay}s")
    logger.info(f"  Poll interval: {settings.poll_interval}s")
    logger.info(f"  Max retries: {settings.max_retries}")
    logger.info(f"  Stop timeout: {settings.stop_timeout}s")
    logger.info(
        f"  Recent window: {settings.recent_window.total_seconds()}s"
        if settings.recent_window
        else "  Recent window: (disabled)"
    )
    logger.info(
        "  Compose command: (disabled)"
        if args.no_compose
        else f"  Compose command: {' '.join(settings.compose_command)}"
    )

    config = load_config(config_path)
    logger.info(f"Loaded {len(config.job_patterns)} job pattern(s)")

    engine = DockerEngine()
    try:
        version = await engine.verify()
        logger.info(f"Connected to Docker {version}")

        classifier = JobPatternClassifier(
            config.job_patterns,
            job_id_labels=settings.job_id_labels,
            recent_window=settings.recent_window,
        )
        compose = None if args.no_compose else ComposeBridge(settings.compose_command)
        reconciler = CleanupReconciler(engine, classifier, compose, settings)
        watcher = JobWatcher(engine, classifier, reconciler)

        # Set up signal handlers for graceful shutdown
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            """Handle shutdown signals."""
            logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        await watcher.start()
        logger.info("Watcher started successfully")

        shutdown = asyncio.create_task(shutdown_event.wait())
        watching = asyncio.create_task(watcher.wait())
        try:
            done, _ = await asyncio.wait(
                {shutdown, watching}, return_when=asyncio.FIRST_COMPLETED
            )
            if watching in done:
                logger.warning("Event feed ended, shutting down")
        finally:
            shutdown.cancel()
            watching.cancel()
            logger.info("Stopping watcher...")
            await watcher.stop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
    finally:
        logger.info("Closing Docker engine...")
        await engine.close()
        logger.info("Watcher stopped cleanly")


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the watcher.

    Returns:
        Exit code (0 for success, 1 for startup errors)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_watcher(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except (ConfigError, EngineError) as e:
        logger.error(f"Failed to start: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
