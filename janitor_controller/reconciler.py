"""
Cleanup reconciler.

Removes everything a finished CI job left behind on the host. Each run
re-lists the engine's resources: containers attributable to the job are
stopped and removed with bounded retries, networks and volumes no remaining
container references are removed, and services belonging to the job are
removed directly.

Nothing is cached between runs, so a run that is interrupted or gives up can
simply be repeated.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager

from janitor_common.config import ReconcilerSettings
from janitor_common.engine import ContainerEngine
from janitor_common.errors import EngineError
from janitor_common.models import (
    CleanupSummary,
    ComposeResult,
    ContainerSnapshot,
    KindOutcome,
    NetworkResource,
    ReconcilerState,
    ResourceKind,
    VolumeResource,
)

from .classifier import JobPatternClassifier
from .compose import ComposeBridge

logger = logging.getLogger(__name__)

# Networks the engine creates itself and refuses to remove
BUILTIN_NETWORKS = frozenset({"bridge", "host", "none", "docker_gwbridge", "ingress"})


def unreferenced_networks(
    containers: Iterable[ContainerSnapshot], networks: Iterable[NetworkResource]
) -> list[NetworkResource]:
    """Networks whose name no listed container is attached to."""
    referenced = {name for container in containers for name in container.networks}
    return [
        network
        for network in networks
        if network.name not in referenced and network.name not in BUILTIN_NETWORKS
    ]


def unreferenced_volumes(
    containers: Iterable[ContainerSnapshot], volumes: Iterable[VolumeResource]
) -> list[VolumeResource]:
    """Volumes no listed container mounts."""
    referenced = {name for container in containers for name in container.mounts}
    return [volume for volume in volumes if volume.name not in referenced]


class CleanupReconciler:
    """
    Drives a job's resources on the host towards "nothing left".

    A run moves through IDLE -> TRIGGERED -> CONVERGING -> DONE. All four
    resource kinds are always attempted; a failure in one never stops the
    others. Runs for the same job id are serialized.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        classifier: JobPatternClassifier,
        compose: ComposeBridge | None = None,
        settings: ReconcilerSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the reconciler.

        Args:
            engine: Container engine to list and remove resources with
            classifier: Decides which resources belong to a job
            compose: Teardown delegate for compose stacks (None disables it)
            settings: Delays, retry bound and stop timeout
            sleep: Awaitable sleep, replaced in tests to skip real delays
        """
        self.engine = engine
        self.classifier = classifier
        self.compose = compose
        self.settings = settings or ReconcilerSettings()
        self.sleep = sleep

        # job_id -> (lock, number of runs holding or waiting for it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    async def clean_up(self, job_id: str) -> CleanupSummary:
        """
        Run one reconciliation pass for a finished job.

        Args:
            job_id: Correlation key of the finished job

        Returns:
            Summary with one outcome per resource kind. Engine failures are
            recorded in the summary, never raised.
        """
        summary = CleanupSummary(job_id=job_id)
        logger.info("Starting cleanup...")

        if not job_id:
            logger.info("No job ID provided, skipping cleanup.")
            summary.skipped = True
            self._transition(summary, ReconcilerState.DONE)
            return summary

        async with self._exclusive(job_id):
            self._transition(summary, ReconcilerState.TRIGGERED)
            if self.settings.initial_delay > 0:
                await self.sleep(self.settings.initial_delay)

            if self.compose is not None:
                summary.compose = await self._delegate_to_compose(self.compose, job_id)

            self._transition(summary, ReconcilerState.CONVERGING)
            steps = (
                (ResourceKind.CONTAINERS, self.cleanup_containers),
                (ResourceKind.NETWORKS, self.cleanup_networks),
                (ResourceKind.VOLUMES, self.cleanup_volumes),
                (ResourceKind.SERVICES, self.cleanup_services),
            )
            for kind, step in steps:
                try:
                    summary.outcomes[kind] = await step(job_id)
                except Exception as e:
                    logger.error(
                        f"Unexpected error cleaning {kind.value} for job {job_id}: {e}",
                        exc_info=True,
                    )
                    summary.outcomes[kind] = KindOutcome(kind, errors=[str(e)])

            self._transition(summary, ReconcilerState.DONE)

        self._log_summary(summary)
        return summary

    async def cleanup_containers(self, job_id: str) -> KindOutcome:
        """
        Stop and remove every container attributable to the job.

        Running containers are stopped with the configured grace timeout and
        then force-removed; others are force-removed directly. While
        attributable containers remain, the step waits poll_interval and
        tries again, up to max_retries attempts.
        """
        outcome = KindOutcome(ResourceKind.CONTAINERS)
        try:
            matched = await self._list_job_containers(job_id)
        except EngineError as e:
            logger.error(f"Failed to list containers: {e}")
            outcome.errors.append(f"failed to list containers: {e}")
            return outcome

        outcome.found = len(matched)
        if not matched:
            logger.info(f"No containers found for job {job_id}")
            return outcome

        attempts = max(1, self.settings.max_retries)
        failures: dict[str, str] = {}  # container id -> last failure
        remaining = matched

        for attempt in range(1, attempts + 1):
            for container in remaining:
                error = await self._remove_container(container)
                if error is None:
                    if container.id not in outcome.removed:
                        outcome.removed.append(container.id)
                    failures.pop(container.id, None)
                else:
                    failures[container.id] = error

            try:
                remaining = await self._list_job_containers(job_id)
            except EngineError as e:
                logger.error(f"Failed to list containers: {e}")
                outcome.errors.extend(failures.values())
                outcome.errors.append(f"failed to list containers: {e}")
                return outcome

            if not remaining:
                logger.info(
                    f"Removed {len(outcome.removed)} container(s) for job {job_id}"
                )
                return outcome

            if attempt < attempts:
                logger.info(
                    f"{len(remaining)} container(s) for job {job_id} still present "
                    f"(attempt {attempt}/{attempts}), retrying in "
                    f"{self.settings.poll_interval}s"
                )
                await self.sleep(self.settings.poll_interval)

        remaining_ids = [container.id for container in remaining]
        outcome.still_active = remaining_ids
        outcome.errors.extend(
            error for container_id, error in failures.items() if container_id in remaining_ids
        )
        logger.error(
            f"Reconciliation failed for job {job_id}: containers still active after "
            f"{attempts} attempt(s): {', '.join(remaining_ids)}"
        )
        return outcome

    async def cleanup_networks(self, job_id: str) -> KindOutcome:
        """
        Remove networks no remaining container is attached to.

        Networks rarely carry job labels, so candidates are found by set
        difference against the networks of every container still listed.
        """
        outcome = KindOutcome(ResourceKind.NETWORKS)
        try:
            containers = await self.engine.list_containers(all=True)
            networks = await self.engine.list_networks()
        except EngineError as e:
            logger.error(f"Failed to list networks: {e}")
            outcome.errors.append(f"failed to list networks: {e}")
            return outcome

        candidates = unreferenced_networks(containers, networks)
        outcome.found = len(candidates)
        if not candidates:
            logger.info(f"No unused networks found for job {job_id}")
            return outcome

        for network in candidates:
            try:
                await self.engine.remove_network(network.id)
            except EngineError as e:
                logger.warning(f"Failed to remove network {network.name} ({network.id}): {e}")
                outcome.errors.append(f"failed to remove network {network.name}: {e}")
                continue
            logger.info(f"Removed network {network.name}")
            outcome.removed.append(network.name)

        return outcome

    async def cleanup_volumes(self, job_id: str) -> KindOutcome:
        """Remove volumes no remaining container mounts."""
        outcome = KindOutcome(ResourceKind.VOLUMES)
        try:
            containers = await self.engine.list_containers(all=True)
            volumes = await self.engine.list_volumes()
        except EngineError as e:
            logger.error(f"Failed to list volumes: {e}")
            outcome.errors.append(f"failed to list volumes: {e}")
            return outcome

        candidates = unreferenced_volumes(containers, volumes)
        outcome.found = len(candidates)
        if not candidates:
            logger.info(f"No unused volumes found for job {job_id}")
            return outcome

        for volume in candidates:
            try:
                await self.engine.remove_volume(volume.name, force=True)
            except EngineError as e:
                logger.warning(f"Failed to remove volume {volume.name}: {e}")
                outcome.errors.append(f"failed to remove volume {volume.name}: {e}")
                continue
            logger.info(f"Removed volume {volume.name}")
            outcome.removed.append(volume.name)

        return outcome

    async def cleanup_services(self, job_id: str) -> KindOutcome:
        """Remove swarm services that belong to the job. Removal is the teardown."""
        outcome = KindOutcome(ResourceKind.SERVICES)
        try:
            services = await self.engine.list_services()
        except EngineError as e:
            logger.error(f"Failed to list services: {e}")
            outcome.errors.append(f"failed to list services: {e}")
            return outcome

        matched = [s for s in services if self.classifier.is_job_service(s, job_id)]
        outcome.found = len(matched)
        if not matched:
            logger.info(f"No services found for job {job_id}")
            return outcome

        for service in matched:
            try:
                await self.engine.remove_service(service.id)
            except EngineError as e:
                logger.warning(f"Failed to remove service {service.name} ({service.id}): {e}")
                outcome.errors.append(f"failed to remove service {service.name}: {e}")
                continue
            logger.info(f"Removed service {service.name}")
            outcome.removed.append(service.name)

        return outcome

    async def _list_job_containers(self, job_id: str) -> list[ContainerSnapshot]:
        containers = await self.engine.list_containers(all=True)
        return [c for c in containers if self.classifier.is_job_resource(c, job_id)]

    async def _remove_container(self, container: ContainerSnapshot) -> str | None:
        """
        Stop (if running) and force-remove one container.

        Returns:
            None on success, otherwise a description of the failure
        """
        if container.is_running:
            try:
                await self.engine.stop_container(
                    container.id, timeout=self.settings.stop_timeout
                )
            except EngineError as e:
                logger.warning(f"Failed to stop container {container.id}: {e}")
                return f"failed to stop container {container.id}: {e}"

        try:
            await self.engine.remove_container(container.id, force=True)
        except EngineError as e:
            logger.warning(f"Failed to remove container {container.id}: {e}")
            return f"failed to remove container {container.id}: {e}"

        logger.info(f"Removed container {container.short_name} ({container.id})")
        return None

    async def _delegate_to_compose(
        self, compose: ComposeBridge, job_id: str
    ) -> ComposeResult | None:
        try:
            containers = await self.engine.list_containers(all=True)
        except EngineError as e:
            logger.error(f"Failed to list containers: {e}")
            return None

        if not compose.is_externally_managed(containers):
            return None
        return await compose.tear_down(job_id)

    @asynccontextmanager
    async def _exclusive(self, job_id: str) -> AsyncIterator[None]:
        """Serialize runs for the same job id. The lock is dropped once unused."""
        lock, users = self._locks.get(job_id, (asyncio.Lock(), 0))
        self._locks[job_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[job_id]
            if users <= 1:
                del self._locks[job_id]
            else:
                self._locks[job_id] = (lock, users - 1)

    def _transition(self, summary: CleanupSummary, state: ReconcilerState) -> None:
        logger.debug(f"Cleanup for job {summary.job_id}: {summary.state.value} -> {state.value}")
        summary.state = state

    def _log_summary(self, summary: CleanupSummary) -> None:
        if summary.nothing_to_clean and summary.ok:
            logger.info("No resources found to clean up.")
        else:
            for kind, outcome in summary.outcomes.items():
                logger.info(
                    f"{kind.value}: found {outcome.found}, removed {len(outcome.removed)}"
                )
            if summary.errors:
                logger.warning(
                    f"Cleanup for job {summary.job_id} finished with errors: "
                    + "; ".join(summary.errors)
                )
        logger.info("Cleanup completed.")
