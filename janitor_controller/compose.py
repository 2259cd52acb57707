"""
Compose bridge.

Detects stacks managed by docker compose and delegates their teardown to the
compose tool's own "down" command.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence

from janitor_common.models import COMPOSE_PROJECT_LABEL, ComposeResult, ContainerSnapshot

from .classifier import has_compose_name

logger = logging.getLogger(__name__)

JOB_ID_ENV = "CI_JOB_ID"
DEFAULT_COMPOSE_COMMAND = ("docker-compose", "down")

# Runs argv with the given environment and returns the exit status
ProcessRunner = Callable[[Sequence[str], Mapping[str, str]], Awaitable[int]]


async def run_process(argv: Sequence[str], env: Mapping[str, str]) -> int:
    """
    Run an external command, passing its output through to ours.

    Args:
        argv: Command and arguments
        env: Complete environment for the child process

    Returns:
        Exit status of the command
    """
    process = await asyncio.create_subprocess_exec(*argv, env=dict(env))
    return await process.wait()


class ComposeBridge:
    """
    Hands teardown of compose-managed stacks to the compose tool.

    Failures are reported in the returned ComposeResult and logged. They
    never prevent the per-resource cleanup from running.
    """

    def __init__(
        self,
        command: Iterable[str] = DEFAULT_COMPOSE_COMMAND,
        runner: ProcessRunner = run_process,
        loose: bool = False,
    ):
        """
        Initialize the bridge.

        Args:
            command: Teardown command, e.g. ("docker", "compose", "down")
            runner: Executes the command; replaced in tests
            loose: Also treat compose-style names without labels as managed
        """
        self.command = list(command)
        self.runner = runner
        self.loose = loose

    def is_externally_managed(self, containers: Iterable[ContainerSnapshot]) -> bool:
        """True if any container belongs to a compose project."""
        for container in containers:
            if COMPOSE_PROJECT_LABEL in container.labels:
                return True
            if self.loose and has_compose_name(container.name):
                return True
        return False

    async def tear_down(self, job_id: str) -> ComposeResult:
        """
        Run the compose teardown command for a finished job.

        Args:
            job_id: Forwarded to the command as CI_JOB_ID

        Returns:
            Exit status of the command, or the launch error
        """
        env = {**os.environ, JOB_ID_ENV: job_id}
        command_line = " ".join(self.command)
        logger.info(f"Docker Compose is managing containers. Running '{command_line}'...")

        try:
            status = await self.runner(self.command, env)
        except OSError as e:
            logger.warning(f"Failed to run '{command_line}': {e}")
            return ComposeResult(command=self.command, exit_status=None, error=str(e))

        if status != 0:
            logger.warning(f"'{command_line}' exited with status {status}")
            return ComposeResult(
                command=self.command,
                exit_status=status,
                error=f"exit status {status}",
            )

        return ComposeResult(command=self.command, exit_status=0)
