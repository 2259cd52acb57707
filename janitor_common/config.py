"""
Job pattern configuration.

The pattern file is a JSON object with a single recognized key, "jobPattern",
holding the list of regular expressions that identify CI job containers:

    {
      "jobPattern": [
        "^/runner-.*-project-.*-concurrent-.*-.*-build$"
      ]
    }
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from .errors import ConfigError
from .models import DEFAULT_JOB_ID_LABELS

logger = logging.getLogger(__name__)

PATTERNS_KEY = "jobPattern"


@dataclass(frozen=True)
class JanitorConfig:
    """Job patterns loaded once at startup. Never modified afterwards."""

    job_patterns: tuple[str, ...]
    source: str | None = None


@dataclass
class ReconcilerSettings:
    """
    Tunables for the cleanup reconciler.

    Attributes:
        initial_delay: Seconds to wait before the first listing, letting
            shutdown hooks of the job finish
        poll_interval: Seconds between container retries
        max_retries: Maximum number of container cleanup attempts per pass
        stop_timeout: Grace period in seconds for stopping a container
        recent_window: Treat containers created within this window as job
            resources. None disables the heuristic.
        job_id_labels: Label keys that carry the CI job id
        compose_command: Teardown command for compose-managed stacks
    """

    initial_delay: float = 2.0
    poll_interval: float = 2.0
    max_retries: int = 5
    stop_timeout: int = 10
    recent_window: timedelta | None = None
    job_id_labels: tuple[str, ...] = DEFAULT_JOB_ID_LABELS
    compose_command: tuple[str, ...] = field(
        default_factory=lambda: ("docker-compose", "down")
    )


def parse_config(data: object, source: str | None = None) -> JanitorConfig:
    """
    Validate a decoded pattern document.

    Args:
        data: Decoded JSON document
        source: Where the document came from (for error messages)

    Raises:
        ConfigError: If the document does not hold a list of pattern strings
    """
    where = source or "<config>"
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected a JSON object")
    if PATTERNS_KEY not in data:
        raise ConfigError(f"{where}: missing '{PATTERNS_KEY}' key")

    patterns = data[PATTERNS_KEY]
    if not isinstance(patterns, list) or not all(
        isinstance(pattern, str) for pattern in patterns
    ):
        raise ConfigError(f"{where}: '{PATTERNS_KEY}' must be a list of strings")

    if not patterns:
        logger.warning(f"{where}: no job patterns configured, nothing will match")

    return JanitorConfig(job_patterns=tuple(patterns), source=source)


def load_config(path: str | Path) -> JanitorConfig:
    """
    Load job patterns from a JSON file.

    Args:
        path: Path to the pattern file

    Returns:
        Loaded configuration

    Raises:
        ConfigError: If the file cannot be read or is malformed
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file {path}: {e}") from e

    return parse_config(data, source=str(path))
