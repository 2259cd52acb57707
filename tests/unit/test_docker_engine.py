"""
Unit tests for janitor_controller.docker_engine.

Tests the docker CLI adapter with mocked subprocess calls.
"""

import asyncio
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest

from janitor_common.errors import EngineError
from janitor_controller.docker_engine import (
    DockerEngine,
    parse_container,
    parse_network,
    parse_service,
    parse_timestamp,
)

CONTAINER_INSPECT = {
    "Id": "c0ffee",
    "Name": "/runner-1-project-2-concurrent-0-abc-build",
    "Created": "2024-05-01T10:00:00.123456789Z",
    "State": {"Status": "running"},
    "Config": {"Labels": {"com.gitlab.gitlab-runner.job.id": "4242"}},
    "Mounts": [
        {"Type": "volume", "Name": "runner-cache"},
        {"Type": "bind", "Source": "/builds"},
    ],
    "NetworkSettings": {"Networks": {"bridge": {}, "job-net": {}}},
}


def mock_process(returncode: int = 0, stdout: str = "", stderr: str = "") -> AsyncMock:
    """Helper to build a finished subprocess mock."""
    process = AsyncMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    return process


class TestParsers:
    """Test suite for inspect output parsers."""

    def test_parse_container(self):
        """Test that inspect output becomes a full snapshot."""
        snapshot = parse_container(CONTAINER_INSPECT)

        assert snapshot.id == "c0ffee"
        assert snapshot.name == "/runner-1-project-2-concurrent-0-abc-build"
        assert snapshot.state == "running"
        assert snapshot.labels == {"com.gitlab.gitlab-runner.job.id": "4242"}
        assert snapshot.mounts == ("runner-cache",)
        assert snapshot.networks == ("bridge", "job-net")
        assert snapshot.created == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=UTC)

    def test_parse_container_with_nulls(self):
        """Test that null labels, mounts and networks are tolerated."""
        snapshot = parse_container(
            {"Id": "x", "Name": "/x", "Config": {"Labels": None}, "Mounts": None}
        )

        assert snapshot.labels == {}
        assert snapshot.mounts == ()
        assert snapshot.networks == ()
        assert snapshot.created is None

    @pytest.mark.parametrize("value", [None, "", "not-a-date"])
    def test_parse_timestamp_invalid(self, value):
        """Test that unparseable timestamps become None."""
        assert parse_timestamp(value) is None

    def test_parse_network(self):
        """Test that attached container ids are collected."""
        network = parse_network(
            {"Id": "n1", "Name": "job-net", "Labels": None, "Containers": {"c1": {}}}
        )
        assert network.name == "job-net"
        assert network.containers == frozenset({"c1"})

    def test_parse_service(self):
        """Test that service name and labels come from the service definition."""
        service = parse_service(
            {"ID": "s1", "Spec": {"Name": "web", "Labels": {"a": "b"}}}
        )
        assert service.name == "web"
        assert service.labels == {"a": "b"}


class TestDockerEngine:
    """Test suite for DockerEngine commands."""

    @pytest.fixture
    def engine(self):
        return DockerEngine()

    @pytest.mark.asyncio
    async def test_list_containers(self, engine):
        """Test that listing runs ps, then one inspect for all ids."""
        processes = [
            mock_process(stdout="c0ffee\n"),
            mock_process(stdout=json.dumps([CONTAINER_INSPECT])),
        ]

        with patch("asyncio.create_subprocess_exec", side_effect=processes) as mock_exec:
            containers = await engine.list_containers(all=True)

        assert [c.id for c in containers] == ["c0ffee"]
        assert mock_exec.call_args_list[0].args == (
            "docker", "ps", "--quiet", "--no-trunc", "--all",
        )
        assert mock_exec.call_args_list[1].args == (
            "docker", "container", "inspect", "c0ffee",
        )

    @pytest.mark.asyncio
    async def test_list_containers_empty(self, engine):
        """Test that an empty listing skips the inspect call."""
        with patch(
            "asyncio.create_subprocess_exec", return_value=mock_process(stdout="")
        ) as mock_exec:
            assert await engine.list_containers() == []

        assert mock_exec.call_count == 1

    @pytest.mark.asyncio
    async def test_list_skips_containers_removed_meanwhile(self, engine):
        """Test that a container vanishing between ps and inspect is skipped."""
        processes = [
            mock_process(stdout="c0ffee\ngone\n"),
            mock_process(
                returncode=1,
                stdout=json.dumps([CONTAINER_INSPECT]),
                stderr="Error: No such container: gone",
            ),
        ]

        with patch("asyncio.create_subprocess_exec", side_effect=processes):
            containers = await engine.list_containers()

        assert [c.id for c in containers] == ["c0ffee"]

    @pytest.mark.asyncio
    async def test_inspect_missing_container(self, engine):
        """Test that inspecting a missing container returns None."""
        process = mock_process(returncode=1, stdout="[]", stderr="Error: No such object: x")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            assert await engine.inspect_container("x") is None

    @pytest.mark.asyncio
    async def test_list_failure_raises(self, engine):
        """Test that a failing listing raises EngineError with stderr."""
        process = mock_process(returncode=1, stderr="Cannot connect to the Docker daemon")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(EngineError, match="Cannot connect") as exc_info:
                await engine.list_containers()

        assert "Cannot connect" in exc_info.value.stderr

    @pytest.mark.asyncio
    async def test_stop_container(self, engine):
        """Test that stop passes the grace timeout."""
        with patch(
            "asyncio.create_subprocess_exec", return_value=mock_process()
        ) as mock_exec:
            await engine.stop_container("c1", timeout=7)

        assert mock_exec.call_args.args == ("docker", "stop", "--time", "7", "c1")

    @pytest.mark.asyncio
    async def test_remove_container_force(self, engine):
        """Test that forced removal passes --force."""
        with patch(
            "asyncio.create_subprocess_exec", return_value=mock_process()
        ) as mock_exec:
            await engine.remove_container("c1", force=True)

        assert mock_exec.call_args.args == ("docker", "rm", "--force", "c1")

    @pytest.mark.asyncio
    async def test_remove_already_removed(self, engine):
        """Test that removing a missing container is not an error."""
        process = mock_process(returncode=1, stderr="Error: No such container: c1")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            await engine.remove_container("c1", force=True)

    @pytest.mark.asyncio
    async def test_remove_failure_raises(self, engine):
        """Test that other removal failures raise EngineError."""
        process = mock_process(returncode=1, stderr="Error: removal already in progress")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(EngineError, match="already in progress"):
                await engine.remove_container("c1", force=True)

    @pytest.mark.asyncio
    async def test_list_services_outside_swarm(self, engine):
        """Test that a non-swarm engine has no services."""
        process = mock_process(
            returncode=1,
            stderr="Error response from daemon: This node is not a swarm manager.",
        )

        with patch("asyncio.create_subprocess_exec", return_value=process):
            assert await engine.list_services() == []

    @pytest.mark.asyncio
    async def test_remove_volume(self, engine):
        """Test the volume removal command."""
        with patch(
            "asyncio.create_subprocess_exec", return_value=mock_process()
        ) as mock_exec:
            await engine.remove_volume("cache", force=True)

        assert mock_exec.call_args.args == ("docker", "volume", "rm", "--force", "cache")

    @pytest.mark.asyncio
    async def test_missing_docker_binary(self, engine):
        """Test that a missing docker executable raises EngineError."""
        with patch(
            "asyncio.create_subprocess_exec", side_effect=FileNotFoundError("docker")
        ):
            with pytest.raises(EngineError, match="Failed to run docker"):
                await engine.verify()

    @pytest.mark.asyncio
    async def test_verify_returns_version(self, engine):
        """Test that verify reports the server version."""
        with patch(
            "asyncio.create_subprocess_exec", return_value=mock_process(stdout="26.1.0\n")
        ):
            assert await engine.verify() == "26.1.0"


class TestSubscribeEvents:
    """Test suite for the docker events subscription."""

    @pytest.fixture
    def events_process(self):
        process = AsyncMock()
        process.stdout = AsyncMock()
        process.stderr = AsyncMock()
        process.returncode = None
        process.wait = AsyncMock()
        process.terminate = lambda: None
        return process

    @pytest.mark.asyncio
    async def test_streams_json_lines(self, events_process):
        """Test that each JSON line becomes one record and filters are passed."""
        events_process.stdout.readline = AsyncMock(
            side_effect=[
                b'{"Type": "container", "Action": "start", "id": "a"}\n',
                b"garbage\n",
                b'{"Type": "container", "Action": "die", "id": "a"}\n',
                b"",
            ]
        )

        async def finish():
            events_process.returncode = 0

        events_process.wait = AsyncMock(side_effect=finish)

        with patch(
            "asyncio.create_subprocess_exec", return_value=events_process
        ) as mock_exec:
            records = [
                r async for r in DockerEngine().subscribe_events({"type": ["container"]})
            ]

        assert [r["Action"] for r in records] == ["start", "die"]
        assert mock_exec.call_args.args == (
            "docker", "events", "--format", "{{json .}}", "--filter", "type=container",
        )

    @pytest.mark.asyncio
    async def test_feed_failure_raises(self, events_process):
        """Test that a non-zero exit of docker events raises EngineError."""
        events_process.stdout.readline = AsyncMock(return_value=b"")
        events_process.stderr.read = AsyncMock(return_value=b"daemon went away")

        async def finish():
            events_process.returncode = 1

        events_process.wait = AsyncMock(side_effect=finish)

        with patch("asyncio.create_subprocess_exec", return_value=events_process):
            with pytest.raises(EngineError, match="daemon went away"):
                async for _ in DockerEngine().subscribe_events():
                    pass

    @pytest.mark.asyncio
    async def test_stderr_drained_while_streaming(self, events_process):
        """Test that stderr is read concurrently instead of only after exit."""
        stderr_reads = []
        lines = [b'{"Type": "container", "Action": "die", "id": "a"}\n', b""]
        stderr_seen_at_readline = []

        async def read_stderr():
            stderr_reads.append("read")
            return b""

        async def readline():
            await asyncio.sleep(0)
            stderr_seen_at_readline.append(bool(stderr_reads))
            return lines.pop(0)

        async def finish():
            events_process.returncode = 0

        events_process.stderr.read = AsyncMock(side_effect=read_stderr)
        events_process.stdout.readline = AsyncMock(side_effect=readline)
        events_process.wait = AsyncMock(side_effect=finish)

        with patch("asyncio.create_subprocess_exec", return_value=events_process):
            records = [r async for r in DockerEngine().subscribe_events()]

        assert [r["id"] for r in records] == ["a"]
        assert stderr_seen_at_readline == [True, True]
