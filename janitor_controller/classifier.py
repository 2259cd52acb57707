"""
Job pattern classifier.

Decides whether a container name belongs to a CI job (configured regular
expressions) and whether a resource is attributable to a given job id
(labels, naming conventions, compose markers and an optional recency
window).
"""

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from enum import Enum
from functools import lru_cache
from typing import Any

from janitor_common.engine import ContainerEngine
from janitor_common.errors import EngineError
from janitor_common.models import (
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    DEFAULT_JOB_ID_LABELS,
    ContainerSnapshot,
    ServiceResource,
)

logger = logging.getLogger(__name__)

# "<project>_<service>_<index>" (compose v1) or "<project>-<service>-<index>" (v2)
COMPOSE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][\w.-]*[_-][\w.-]+[_-]\d+$")


class MatchReason(str, Enum):
    """Why a resource was attributed to a job, in precedence order."""

    CONTAINER_ID = "container id"
    JOB_ID_LABEL = "job-id label"
    EXACT_NAME = "exact name"
    NAME_CONTAINS = "name contains job id"
    COMPOSE_LABEL = "compose label"
    COMPOSE_NAME = "compose naming"
    RECENTLY_CREATED = "recently created"


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def matches(name: str, patterns: Iterable[str]) -> bool:
    """
    Check whether a container name matches any job pattern.

    Patterns are searched anywhere in the name, so anchors must be part of
    the pattern itself. A pattern that does not compile is logged and
    skipped.

    Args:
        name: Container name in engine form (e.g. "/runner-123-build")
        patterns: Regular expressions to try, in order

    Returns:
        True on the first matching pattern, False otherwise
    """
    for pattern in patterns:
        try:
            compiled = _compile(pattern)
        except re.error as e:
            logger.warning(
                f"Failed to match container name {name} with pattern {pattern}: {e}"
            )
            continue

        if compiled.search(name):
            logger.debug(f"Container {name} matched job pattern {pattern}")
            return True

    return False


def is_compose_container(resource: Any) -> bool:
    """True if the resource carries a compose project or service label."""
    labels = getattr(resource, "labels", None) or {}
    return COMPOSE_PROJECT_LABEL in labels or COMPOSE_SERVICE_LABEL in labels


def has_compose_name(name: str) -> bool:
    """True if the name follows compose's "<project>_<service>_<index>" scheme."""
    return COMPOSE_NAME_PATTERN.match(name.lstrip("/")) is not None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobPatternClassifier:
    """
    Attributes containers and other resources to CI jobs.

    The classifier holds only read-only configuration, so results depend
    solely on its inputs (and the injected clock when the recency window is
    enabled).
    """

    def __init__(
        self,
        patterns: Iterable[str],
        job_id_labels: Iterable[str] = DEFAULT_JOB_ID_LABELS,
        recent_window: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the classifier.

        Args:
            patterns: Job name patterns (regular expressions)
            job_id_labels: Label keys that carry the CI job id
            recent_window: Attribute containers created this recently to the
                job. None disables the heuristic.
            clock: Returns the current time as an aware datetime
        """
        self.patterns = tuple(patterns)
        self.job_id_labels = tuple(job_id_labels)
        self.recent_window = recent_window
        self.clock = clock

    def matches(self, name: str) -> bool:
        """Check a container name against the configured job patterns."""
        return matches(name, self.patterns)

    def job_id_from_labels(self, labels: Mapping[str, str]) -> str | None:
        """Return the first non-empty job id label, if any."""
        for key in self.job_id_labels:
            value = labels.get(key)
            if value:
                return value
        return None

    def resolve_job_id(self, snapshot: ContainerSnapshot | None, fallback: str) -> str:
        """
        Determine the correlation key for a finished job container.

        Args:
            snapshot: The job container, if it could be inspected
            fallback: Key to use when the container carries no job id label
                (normally the container id from the event)
        """
        if snapshot is not None:
            job_id = self.job_id_from_labels(snapshot.labels)
            if job_id:
                return job_id
        return fallback

    def match_reason(self, resource: Any, job_id: str) -> MatchReason | None:
        """
        Explain why a resource is attributable to a job.

        Args:
            resource: Container snapshot or any resource with name and labels
            job_id: Correlation key of the finished job

        Returns:
            The first heuristic that fires, or None if the resource is not
            attributable
        """
        if not job_id:
            return None

        labels = getattr(resource, "labels", None) or {}
        name = getattr(resource, "name", "") or ""
        trimmed = name.lstrip("/")

        # The container whose exit triggered the cleanup, when the job id fell back to it
        if getattr(resource, "id", None) == job_id:
            return MatchReason.CONTAINER_ID
        if any(labels.get(key) == job_id for key in self.job_id_labels):
            return MatchReason.JOB_ID_LABEL
        if trimmed == job_id:
            return MatchReason.EXACT_NAME
        if job_id in name:
            return MatchReason.NAME_CONTAINS
        if is_compose_container(resource):
            return MatchReason.COMPOSE_LABEL
        if trimmed and has_compose_name(trimmed):
            return MatchReason.COMPOSE_NAME
        if self._recently_created(resource):
            return MatchReason.RECENTLY_CREATED
        return None

    def is_job_resource(self, resource: Any, job_id: str) -> bool:
        """True if any attribution heuristic fires for the resource."""
        reason = self.match_reason(resource, job_id)
        if reason is not None:
            logger.debug(
                f"Resource {getattr(resource, 'name', '?')} attributed to job "
                f"{job_id} ({reason.value})"
            )
        return reason is not None

    def is_job_service(self, service: ServiceResource, job_id: str) -> bool:
        """A service belongs to the job if its job id label or name says so."""
        if not job_id:
            return False
        if any(service.labels.get(key) == job_id for key in self.job_id_labels):
            return True
        return job_id in service.name

    async def inspect_job_container(
        self, engine: ContainerEngine, container_id: str
    ) -> ContainerSnapshot | None:
        """
        Inspect a container and check its name against the job patterns.

        Args:
            engine: Engine used for the inspect call
            container_id: Container id from the event feed

        Returns:
            The snapshot if the container exists and matches, None otherwise
        """
        try:
            snapshot = await engine.inspect_container(container_id)
        except EngineError as e:
            logger.error(f"Failed to inspect container {container_id}: {e}")
            return None

        if snapshot is None:
            logger.info(f"Container {container_id} not found.")
            return None

        if not self.matches(snapshot.name):
            return None

        logger.info(f"Container {container_id} matched job pattern.")
        return snapshot

    def _recently_created(self, resource: Any) -> bool:
        if self.recent_window is None:
            return False
        created = getattr(resource, "created", None)
        if created is None:
            return False
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return self.clock() - created <= self.recent_window
