"""
Shared fixtures for janitor unit tests.

FakeEngine keeps resources in memory and records every call, so tests can
assert on the exact sequence of engine operations without a docker daemon.
"""

import dataclasses
from unittest.mock import AsyncMock

import pytest

from janitor_common.config import ReconcilerSettings
from janitor_common.engine import ContainerEngine
from janitor_common.errors import EngineError
from janitor_common.models import (
    ContainerSnapshot,
    NetworkResource,
    ServiceResource,
    VolumeResource,
)
from janitor_controller.classifier import JobPatternClassifier
from janitor_controller.reconciler import CleanupReconciler

RUNNER_PATTERNS = (
    "^/runner-.*-project-.*-concurrent-.*-.*-build$",
    "^/runner-.*-project-.*-concurrent-.*-.*-test$",
    "^/runner-.*-project-.*-concurrent-.*-.*-deploy$",
)


class FakeEngine(ContainerEngine):
    """In-memory container engine."""

    def __init__(self):
        self.containers: dict[str, ContainerSnapshot] = {}
        self.networks: dict[str, NetworkResource] = {}
        self.volumes: dict[str, VolumeResource] = {}
        self.services: dict[str, ServiceResource] = {}

        self.events: list[dict] = []
        self.events_error: Exception | None = None

        self.fail_stop: set[str] = set()
        self.fail_remove: set[str] = set()
        self.fail_list: set[str] = set()  # method names whose listing raises
        self.keep_running: set[str] = set()  # stop succeeds but container stays up
        self.calls: list[tuple] = []
        self.closed = False

    def add_container(self, container: ContainerSnapshot) -> ContainerSnapshot:
        self.containers[container.id] = container
        return container

    def add_network(self, name: str, **kwargs) -> NetworkResource:
        network = NetworkResource(id=f"net-{name}", name=name, **kwargs)
        self.networks[network.id] = network
        return network

    def add_volume(self, name: str, **kwargs) -> VolumeResource:
        volume = VolumeResource(name=name, **kwargs)
        self.volumes[name] = volume
        return volume

    def add_service(self, name: str, **kwargs) -> ServiceResource:
        service = ServiceResource(id=f"svc-{name}", name=name, **kwargs)
        self.services[service.id] = service
        return service

    def calls_to(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    def _check_list(self, method: str) -> None:
        self.calls.append((method,))
        if method in self.fail_list:
            raise EngineError(f"{method} unavailable")

    async def subscribe_events(self, filters=None):
        self.calls.append(("subscribe_events", filters))
        for raw in self.events:
            yield raw
        if self.events_error is not None:
            raise self.events_error

    async def list_containers(self, all=True):
        self._check_list("list_containers")
        return [c for c in self.containers.values() if all or c.is_running]

    async def inspect_container(self, container_id):
        self.calls.append(("inspect_container", container_id))
        if "inspect_container" in self.fail_list:
            raise EngineError("inspect failed")
        return self.containers.get(container_id)

    async def stop_container(self, container_id, timeout=10):
        self.calls.append(("stop_container", container_id, timeout))
        if container_id in self.fail_stop:
            raise EngineError(f"cannot stop {container_id}")
        container = self.containers.get(container_id)
        if container is not None and container_id not in self.keep_running:
            self.containers[container_id] = dataclasses.replace(container, state="exited")

    async def remove_container(self, container_id, force=False):
        self.calls.append(("remove_container", container_id, force))
        if container_id in self.fail_remove:
            raise EngineError(f"cannot remove {container_id}")
        self.containers.pop(container_id, None)

    async def list_networks(self):
        self._check_list("list_networks")
        return list(self.networks.values())

    async def remove_network(self, network_id):
        self.calls.append(("remove_network", network_id))
        if network_id in self.fail_remove:
            raise EngineError(f"cannot remove {network_id}")
        self.networks.pop(network_id, None)

    async def list_volumes(self):
        self._check_list("list_volumes")
        return list(self.volumes.values())

    async def remove_volume(self, name, force=False):
        self.calls.append(("remove_volume", name, force))
        if name in self.fail_remove:
            raise EngineError(f"cannot remove {name}")
        self.volumes.pop(name, None)

    async def list_services(self):
        self._check_list("list_services")
        return list(self.services.values())

    async def remove_service(self, service_id):
        self.calls.append(("remove_service", service_id))
        if service_id in self.fail_remove:
            raise EngineError(f"cannot remove {service_id}")
        self.services.pop(service_id, None)

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_engine():
    """Create an empty in-memory engine."""
    return FakeEngine()


@pytest.fixture
def make_container():
    """Factory for container snapshots with sensible defaults."""

    def factory(
        container_id: str,
        name: str | None = None,
        labels: dict[str, str] | None = None,
        state: str = "exited",
        **kwargs,
    ) -> ContainerSnapshot:
        return ContainerSnapshot(
            id=container_id,
            name=name if name is not None else f"/{container_id}",
            labels=labels or {},
            state=state,
            **kwargs,
        )

    return factory


@pytest.fixture
def classifier():
    """Classifier with the GitLab runner patterns and no recency window."""
    return JobPatternClassifier(RUNNER_PATTERNS)


@pytest.fixture
def fake_sleep():
    """Awaitable sleep that returns immediately and records delays."""
    return AsyncMock()


@pytest.fixture
def settings():
    """Reconciler settings with small, recognizable delays."""
    return ReconcilerSettings(initial_delay=2.0, poll_interval=0.5, max_retries=3)


@pytest.fixture
def reconciler(fake_engine, classifier, settings, fake_sleep):
    """Reconciler wired to the fake engine, without compose delegation."""
    return CleanupReconciler(
        engine=fake_engine,
        classifier=classifier,
        compose=None,
        settings=settings,
        sleep=fake_sleep,
    )
