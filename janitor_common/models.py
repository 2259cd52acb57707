"""
Data models for the CI janitor.

These models describe engine resources as seen during a single reconciliation
pass and the outcome of that pass. Snapshots are rebuilt from the engine on
every pass and are never kept between passes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Label keys used by CI runners and compose
GITLAB_JOB_ID_LABEL = "com.gitlab.gitlab-runner.job.id"
GITHUB_JOB_ID_LABEL = "com.github.ci.job.id"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"

DEFAULT_JOB_ID_LABELS = (GITLAB_JOB_ID_LABEL, GITHUB_JOB_ID_LABEL)


@dataclass(frozen=True)
class ContainerSnapshot:
    """
    A container as reported by the engine at listing time.

    The name is kept in engine form, which is usually prefixed with "/".
    """

    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    state: str = "exited"  # "running", "exited", "created", "paused", "dead", ...
    created: datetime | None = None
    mounts: tuple[str, ...] = ()  # Volume names mounted into the container
    networks: tuple[str, ...] = ()  # Names of attached networks

    @property
    def short_name(self) -> str:
        """Name without the engine's leading slash."""
        return self.name.lstrip("/")

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    def to_dict(self) -> dict[str, Any]:
        """Convert snapshot to dictionary format (for CLI output)."""
        return {
            "id": self.id,
            "name": self.short_name,
            "state": self.state,
            "created": self.created.isoformat() if self.created else None,
            "labels": dict(self.labels),
        }


@dataclass(frozen=True)
class NetworkResource:
    """A network and the ids of the containers currently attached to it."""

    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    containers: frozenset[str] = frozenset()


@dataclass(frozen=True)
class VolumeResource:
    """A named volume. Volumes are addressed by name."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    driver: str = "local"


@dataclass(frozen=True)
class ServiceResource:
    """A swarm service."""

    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ContainerEvent:
    """
    A normalized container event from the engine feed.

    The timestamp is kept as reported by the feed (nanoseconds when
    available, otherwise seconds).
    """

    container_id: str
    action: str
    timestamp: int | None = None
    attributes: dict[str, str] = field(default_factory=dict)


class ReconcilerState(str, Enum):
    """Lifecycle of a single cleanup run."""

    IDLE = "idle"
    TRIGGERED = "triggered"
    CONVERGING = "converging"
    DONE = "done"


class ResourceKind(str, Enum):
    CONTAINERS = "containers"
    NETWORKS = "networks"
    VOLUMES = "volumes"
    SERVICES = "services"


@dataclass
class KindOutcome:
    """
    Result of reconciling one resource kind.

    found counts the resources judged removable on the first listing;
    still_active lists container ids that survived every retry.
    """

    kind: ResourceKind
    found: int = 0
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    still_active: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.still_active

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "found": self.found,
            "removed": list(self.removed),
            "errors": list(self.errors),
            "still_active": list(self.still_active),
        }


@dataclass
class ComposeResult:
    """Outcome of delegating teardown to the compose tool."""

    command: list[str]
    exit_status: int | None  # None when the command could not be launched
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class CleanupSummary:
    """
    Aggregated outcome of one reconciliation pass for a job id.

    The summary is returned to the caller; nothing about it is retained by
    the reconciler after the pass.
    """

    job_id: str
    state: ReconcilerState = ReconcilerState.IDLE
    outcomes: dict[ResourceKind, KindOutcome] = field(default_factory=dict)
    compose: ComposeResult | None = None
    skipped: bool = False

    @property
    def nothing_to_clean(self) -> bool:
        """True when none of the resource kinds found anything to remove."""
        return all(outcome.found == 0 for outcome in self.outcomes.values())

    @property
    def errors(self) -> list[str]:
        """Per-kind errors, prefixed with the kind they came from."""
        result = []
        for kind in ResourceKind:
            outcome = self.outcomes.get(kind)
            if outcome is None:
                continue
            result.extend(f"{kind.value}: {error}" for error in outcome.errors)
            if outcome.still_active:
                result.append(
                    f"{kind.value}: still active after retries: "
                    f"{', '.join(outcome.still_active)}"
                )
        return result

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Convert summary to dictionary format (for JSON output)."""
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "skipped": self.skipped,
            "nothing_to_clean": self.nothing_to_clean,
            "outcomes": {
                kind.value: outcome.to_dict() for kind, outcome in self.outcomes.items()
            },
            "compose": None
            if self.compose is None
            else {
                "command": self.compose.command,
                "exit_status": self.compose.exit_status,
                "error": self.compose.error,
            },
            "errors": self.errors,
        }
