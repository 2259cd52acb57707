"""
Docker engine adapter.

Implements the ContainerEngine interface on top of the docker CLI. Listing
is done in two steps (ids first, then one inspect call for all of them) so
the snapshots carry labels, mounts and networks.
"""

import asyncio
import json
import logging
import re
from collections.abc import AsyncGenerator, Sequence
from datetime import datetime
from typing import Any

from janitor_common.engine import ContainerEngine
from janitor_common.errors import EngineError
from janitor_common.models import (
    ContainerSnapshot,
    NetworkResource,
    ServiceResource,
    VolumeResource,
)

logger = logging.getLogger(__name__)

# Docker reports nanosecond precision; fromisoformat handles at most microseconds
_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


def _is_missing(stderr: str) -> bool:
    """True if the engine complained that the object does not exist."""
    return "no such" in stderr.lower()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an engine timestamp such as "2024-05-01T10:00:00.123456789Z"."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(
            _FRACTION_PATTERN.sub(r"\1", value).replace("Z", "+00:00")
        )
    except (ValueError, AttributeError):
        return None


def parse_container(data: dict[str, Any]) -> ContainerSnapshot:
    """Build a ContainerSnapshot from "docker inspect" output."""
    config = data.get("Config") or {}
    state = data.get("State") or {}
    settings = data.get("NetworkSettings") or {}
    mounts = tuple(
        mount["Name"] for mount in data.get("Mounts") or [] if mount.get("Name")
    )

    return ContainerSnapshot(
        id=data["Id"],
        name=data.get("Name", ""),
        labels=dict(config.get("Labels") or {}),
        state=(state.get("Status") or "").lower(),
        created=parse_timestamp(data.get("Created")),
        mounts=mounts,
        networks=tuple(settings.get("Networks") or {}),
    )


def parse_network(data: dict[str, Any]) -> NetworkResource:
    """Build a NetworkResource from "docker network inspect" output."""
    return NetworkResource(
        id=data["Id"],
        name=data.get("Name", ""),
        labels=dict(data.get("Labels") or {}),
        containers=frozenset(data.get("Containers") or {}),
    )


def parse_volume(data: dict[str, Any]) -> VolumeResource:
    """Build a VolumeResource from "docker volume inspect" output."""
    return VolumeResource(
        name=data["Name"],
        labels=dict(data.get("Labels") or {}),
        driver=data.get("Driver", "local"),
    )


def parse_service(data: dict[str, Any]) -> ServiceResource:
    """Build a ServiceResource from "docker service inspect" output."""
    spec = data.get("Spec") or {}
    return ServiceResource(
        id=data["ID"],
        name=spec.get("Name", ""),
        labels=dict(spec.get("Labels") or {}),
    )


class DockerEngine(ContainerEngine):
    """
    Container engine backed by the docker CLI.

    Every operation runs one docker command. Commands that fail raise
    EngineError with the command's stderr; removing or stopping an object
    that is already gone is treated as success.
    """

    def __init__(self, docker_bin: str = "docker"):
        """
        Initialize the engine.

        Args:
            docker_bin: Name or path of the docker executable
        """
        self.docker_bin = docker_bin
        self._event_processes: set[asyncio.subprocess.Process] = set()

    async def _run(self, *args: str, check: bool = True) -> tuple[int, str, str]:
        """
        Run a docker command and capture its output.

        Returns:
            Tuple of (exit status, stdout, stderr)

        Raises:
            EngineError: If the command cannot be started, or fails and
                check is True
        """
        argv = [self.docker_bin, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineError(f"Failed to run {self.docker_bin}: {e}", command=argv) from e

        stdout, stderr = await process.communicate()
        out, err = stdout.decode(), stderr.decode()

        if check and process.returncode != 0:
            raise EngineError(
                f"'{' '.join(argv[:3])}' failed: {err.strip()}", command=argv, stderr=err
            )
        return process.returncode, out, err

    async def _run_ignoring_missing(self, *args: str) -> None:
        returncode, _, stderr = await self._run(*args, check=False)
        if returncode != 0 and not _is_missing(stderr):
            raise EngineError(
                f"'{self.docker_bin} {' '.join(args[:2])}' failed: {stderr.strip()}",
                command=[self.docker_bin, *args],
                stderr=stderr,
            )

    async def _list_ids(self, *args: str) -> list[str]:
        _, stdout, _ = await self._run(*args)
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    async def _inspect(self, args: Sequence[str], ids: Sequence[str]) -> list[dict[str, Any]]:
        """
        Inspect several objects with one command.

        Objects removed between listing and inspection are skipped.
        """
        if not ids:
            return []

        returncode, stdout, stderr = await self._run(*args, *ids, check=False)
        if returncode != 0 and not _is_missing(stderr):
            raise EngineError(
                f"'{self.docker_bin} {' '.join(args)}' failed: {stderr.strip()}",
                command=[self.docker_bin, *args, *ids],
                stderr=stderr,
            )

        if not stdout.strip():
            return []
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise EngineError(f"Failed to parse inspect output: {e}") from e

    async def verify(self) -> str:
        """
        Check that the docker daemon is reachable.

        Returns:
            Server version

        Raises:
            EngineError: If the daemon cannot be reached
        """
        _, stdout, _ = await self._run("version", "--format", "{{.Server.Version}}")
        return stdout.strip()

    async def subscribe_events(
        self, filters: dict[str, list[str]] | None = None
    ) -> AsyncGenerator[dict[str, Any], None]:
        args = [self.docker_bin, "events", "--format", "{{json .}}"]
        for key, values in (filters or {}).items():
            for value in values:
                args.extend(["--filter", f"{key}={value}"])

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineError(f"Failed to run {self.docker_bin}: {e}", command=args) from e

        self._event_processes.add(process)
        # Drained alongside stdout so a full stderr pipe cannot stall the feed
        stderr_reader = asyncio.create_task(process.stderr.read())

        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed event: {line[:200]!r}")

            await process.wait()
            if process.returncode != 0:
                stderr = (await stderr_reader).decode()
                raise EngineError(
                    f"'{self.docker_bin} events' exited with status "
                    f"{process.returncode}: {stderr.strip()}",
                    command=args,
                    stderr=stderr,
                )
        finally:
            self._event_processes.discard(process)
            if process.returncode is None:
                process.terminate()
                await process.wait()
            if not stderr_reader.done():
                stderr_reader.cancel()

    async def list_containers(self, all: bool = True) -> list[ContainerSnapshot]:
        args = ["ps", "--quiet", "--no-trunc"]
        if all:
            args.append("--all")
        ids = await self._list_ids(*args)
        return [parse_container(data) for data in await self._inspect(["container", "inspect"], ids)]

    async def inspect_container(self, container_id: str) -> ContainerSnapshot | None:
        results = await self._inspect(["container", "inspect"], [container_id])
        if not results:
            return None
        return parse_container(results[0])

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        await self._run_ignoring_missing("stop", "--time", str(timeout), container_id)

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(container_id)
        await self._run_ignoring_missing(*args)

    async def list_networks(self) -> list[NetworkResource]:
        ids = await self._list_ids("network", "ls", "--quiet", "--no-trunc")
        return [parse_network(data) for data in await self._inspect(["network", "inspect"], ids)]

    async def remove_network(self, network_id: str) -> None:
        await self._run_ignoring_missing("network", "rm", network_id)

    async def list_volumes(self) -> list[VolumeResource]:
        names = await self._list_ids("volume", "ls", "--quiet")
        return [parse_volume(data) for data in await self._inspect(["volume", "inspect"], names)]

    async def remove_volume(self, name: str, force: bool = False) -> None:
        args = ["volume", "rm"]
        if force:
            args.append("--force")
        args.append(name)
        await self._run_ignoring_missing(*args)

    async def list_services(self) -> list[ServiceResource]:
        returncode, stdout, stderr = await self._run("service", "ls", "--quiet", check=False)
        if returncode != 0:
            # Services only exist on swarm managers
            if "swarm" in stderr.lower():
                logger.debug("Engine is not a swarm manager, no services to list")
                return []
            raise EngineError(
                f"'{self.docker_bin} service ls' failed: {stderr.strip()}",
                command=[self.docker_bin, "service", "ls", "--quiet"],
                stderr=stderr,
            )

        ids = [line.strip() for line in stdout.splitlines() if line.strip()]
        return [parse_service(data) for data in await self._inspect(["service", "inspect"], ids)]

    async def remove_service(self, service_id: str) -> None:
        await self._run_ignoring_missing("service", "rm", service_id)

    async def close(self) -> None:
        """Terminate any running event subscription."""
        for process in list(self._event_processes):
            if process.returncode is None:
                process.terminate()
                await process.wait()
        self._event_processes.clear()
