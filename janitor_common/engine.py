"""
Abstract container engine interface.

This module defines the capabilities the janitor needs from a container
engine, allowing the Docker CLI adapter to be swapped for a test double or
another engine client.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from typing import Any

from .models import (
    ContainerSnapshot,
    NetworkResource,
    ServiceResource,
    VolumeResource,
)


class ContainerEngine(ABC):
    """
    Abstract base class for container engine operations.

    Implementations raise EngineError when an operation fails. Removing a
    resource that no longer exists is not an error.
    """

    @abstractmethod
    def subscribe_events(
        self, filters: dict[str, list[str]] | None = None
    ) -> AsyncGenerator[dict[str, Any], None]:
        """
        Subscribe to the engine's live event feed.

        Args:
            filters: Engine-side event filters, e.g. {"type": ["container"]}

        Returns:
            Async generator of raw event records in feed order. It
            raises EngineError if the feed breaks.
        """

    @abstractmethod
    async def list_containers(self, all: bool = True) -> list[ContainerSnapshot]:
        """
        List containers.

        Args:
            all: Include stopped containers

        Returns:
            Fresh container snapshots
        """

    @abstractmethod
    async def inspect_container(self, container_id: str) -> ContainerSnapshot | None:
        """
        Inspect a single container.

        Returns:
            ContainerSnapshot if the container exists, None otherwise
        """

    @abstractmethod
    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """Stop a running container, killing it after timeout seconds."""

    @abstractmethod
    async def remove_container(self, container_id: str, force: bool = False) -> None:
        """Remove a container."""

    @abstractmethod
    async def list_networks(self) -> list[NetworkResource]:
        """List networks."""

    @abstractmethod
    async def remove_network(self, network_id: str) -> None:
        """Remove a network."""

    @abstractmethod
    async def list_volumes(self) -> list[VolumeResource]:
        """List volumes."""

    @abstractmethod
    async def remove_volume(self, name: str, force: bool = False) -> None:
        """Remove a volume by name."""

    @abstractmethod
    async def list_services(self) -> list[ServiceResource]:
        """
        List swarm services.

        Returns:
            Services, or an empty list when the engine is not part of a swarm
        """

    @abstractmethod
    async def remove_service(self, service_id: str) -> None:
        """Remove a swarm service."""

    async def close(self) -> None:
        """Release engine resources. Safe to call more than once."""

    async def __aenter__(self) -> "ContainerEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
