"""
Operator CLI for the CI janitor.

Provides commands for checking pattern files, previewing what a cleanup
would remove, and running a cleanup for a job by hand.
"""

import asyncio
import json
import os
import shlex
import sys

import click

from janitor_common.config import ReconcilerSettings, load_config
from janitor_common.errors import ConfigError, EngineError
from janitor_common.models import DEFAULT_JOB_ID_LABELS, CleanupSummary
from janitor_controller.classifier import JobPatternClassifier
from janitor_controller.compose import DEFAULT_COMPOSE_COMMAND, ComposeBridge
from janitor_controller.docker_engine import DockerEngine
from janitor_controller.reconciler import (
    CleanupReconciler,
    unreferenced_networks,
    unreferenced_volumes,
)

DEFAULT_CONFIG_PATH = "patterns/jobPattern.json"


def get_config_path() -> str:
    """Get the pattern file path from environment variable or default."""
    return os.environ.get("CI_JANITOR_CONFIG", DEFAULT_CONFIG_PATH)


def get_job_id_labels() -> tuple[str, ...]:
    """Get job id label keys from environment variable or default."""
    raw = os.environ.get("CI_JANITOR_JOB_ID_LABELS", "")
    labels = tuple(label.strip() for label in raw.split(",") if label.strip())
    return labels or DEFAULT_JOB_ID_LABELS


def get_compose_command() -> tuple[str, ...]:
    """Get the compose teardown command from environment variable or default."""
    command = os.environ.get("CI_JANITOR_COMPOSE_COMMAND")
    if not command:
        return DEFAULT_COMPOSE_COMMAND
    return tuple(shlex.split(command))


def get_engine() -> DockerEngine:
    """Get the engine instance."""
    return DockerEngine()


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def load_patterns(config_path: str | None) -> tuple[str, ...]:
    """Load job patterns, exiting with an error message if the file is bad."""
    try:
        return load_config(config_path or get_config_path()).job_patterns
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def print_summary(summary: CleanupSummary) -> None:
    """Print a cleanup summary in human readable form."""
    if summary.skipped:
        click.echo("No job ID provided, nothing was cleaned")
        return

    if summary.compose is not None:
        status = "ok" if summary.compose.ok else summary.compose.error
        click.echo(f"Compose teardown: {' '.join(summary.compose.command)} ({status})")

    if summary.nothing_to_clean and summary.ok:
        click.echo("No resources found to clean up")
        return

    click.echo(f"Cleanup for job {summary.job_id}:")
    click.echo("-" * 60)
    for kind, outcome in summary.outcomes.items():
        click.echo(
            f"  {kind.value:<12} found {outcome.found:<4} removed {len(outcome.removed)}"
        )
        for name in outcome.removed:
            click.echo(f"    - {name}")

    if summary.errors:
        click.echo("")
        click.echo("Errors:")
        for error in summary.errors:
            click.echo(f"  ✗ {error}")


@click.group()
def cli():
    """CI Janitor Admin - Inspect and clean up resources of finished CI jobs."""
    pass


@cli.command("check-config")
@click.argument("path", type=click.Path(dir_okay=False))
def check_config(path: str):
    """Validate a job pattern file."""
    try:
        config = load_config(path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ {path}: {len(config.job_patterns)} job pattern(s)")
    for pattern in config.job_patterns:
        click.echo(f"  {pattern}")


@cli.command("match")
@click.argument("name")
@click.option("--config", "config_path", default=None, help="Job pattern file")
def match(name: str, config_path: str | None):
    """Check whether a container NAME matches the job patterns."""
    classifier = JobPatternClassifier(load_patterns(config_path))

    if classifier.matches(name):
        click.echo(f"✓ {name} matches a job pattern")
    else:
        click.echo(f"✗ {name} does not match any job pattern")
        sys.exit(1)


@cli.command("candidates")
@click.argument("job_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def candidates(job_id: str, json_output: bool):
    """Show what a cleanup for JOB_ID would remove, without removing it."""
    classifier = JobPatternClassifier([], job_id_labels=get_job_id_labels())

    async def preview():
        engine = get_engine()
        try:
            containers = await engine.list_containers(all=True)
            networks = await engine.list_networks()
            volumes = await engine.list_volumes()
            services = await engine.list_services()
        finally:
            await engine.close()

        attributed = []
        for container in containers:
            reason = classifier.match_reason(container, job_id)
            if reason is not None:
                attributed.append((container, reason))

        remaining = [c for c in containers if classifier.match_reason(c, job_id) is None]
        return {
            "containers": attributed,
            "networks": unreferenced_networks(remaining, networks),
            "volumes": unreferenced_volumes(remaining, volumes),
            "services": [s for s in services if classifier.is_job_service(s, job_id)],
        }

    try:
        found = run_async(preview())
    except EngineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        data = {
            "job_id": job_id,
            "containers": [
                {**container.to_dict(), "reason": reason.value}
                for container, reason in found["containers"]
            ],
            "networks": [network.name for network in found["networks"]],
            "volumes": [volume.name for volume in found["volumes"]],
            "services": [service.name for service in found["services"]],
        }
        click.echo(json.dumps(data, indent=2))
        return

    if not any(found.values()):
        click.echo("No resources found to clean up")
        return

    click.echo(f"{'CONTAINER':<40} {'STATE':<10} REASON")
    click.echo("-" * 70)
    for container, reason in found["containers"]:
        click.echo(f"{container.short_name:<40} {container.state:<10} {reason.value}")
    for kind in ("networks", "volumes", "services"):
        if found[kind]:
            click.echo(f"\n{kind.capitalize()}:")
            for resource in found[kind]:
                click.echo(f"  {resource.name}")


@cli.command("cleanup")
@click.argument("job_id")
@click.option("--max-retries", default=5, show_default=True, help="Container cleanup attempts")
@click.option("--poll-interval", default=2.0, show_default=True, help="Seconds between attempts")
@click.option("--no-compose", is_flag=True, help="Do not delegate teardown to compose")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def cleanup(
    job_id: str, max_retries: int, poll_interval: float, no_compose: bool, json_output: bool
):
    """Run one cleanup pass for JOB_ID now."""
    settings = ReconcilerSettings(
        initial_delay=0,
        poll_interval=poll_interval,
        max_retries=max_retries,
        job_id_labels=get_job_id_labels(),
        compose_command=get_compose_command(),
    )

    async def run():
        engine = get_engine()
        try:
            reconciler = CleanupReconciler(
                engine,
                JobPatternClassifier([], job_id_labels=settings.job_id_labels),
                None if no_compose else ComposeBridge(settings.compose_command),
                settings,
            )
            return await reconciler.clean_up(job_id)
        finally:
            await engine.close()

    summary = run_async(run())

    if json_output:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        print_summary(summary)

    if not summary.ok:
        sys.exit(1)


if __name__ == "__main__":
    cli()
