"""
pipewright.cli - Command Line Interface
=========================================

    pipewright validate FILE
        Load a pipeline document, validate its job graph and print the
        execution levels.

    pipewright run FILE --event push --ref main [--actor NAME] [--approve ENV]
        Run the pipeline locally against a working tree. Exits 0 if the
        run succeeded (or the event was ignored by the triggers), 1 otherwise.
"""

from __future__ import annotations

import asyncio
import sys
import uuid
from pathlib import Path
from typing import Optional

import click

from pipewright.core.config import configure_logging, load_config
from pipewright.core.enums import JobStatus
from pipewright.core.exceptions import PipewrightError
from pipewright.core.models import Event
from pipewright.core.state import RunState
from pipewright.facade import Pipewright
from pipewright.integrations.hosting import DirectoryHostingTarget, InMemoryHostingTarget
from pipewright.integrations.source import LocalSourceProvider
from pipewright.orchestration.job_graph import JobGraph
from pipewright.pipeline.loader import EVENT_ALIASES, load_pipeline


_STATUS_MARKS = {
    JobStatus.SUCCEEDED: "ok",
    JobStatus.FAILED: "FAILED",
    JobStatus.CANCELLED: "cancelled",
    JobStatus.PENDING: "not run",
    JobStatus.RUNNING: "running",
}


def _fail(message: str, error: Optional[PipewrightError] = None) -> None:
    click.echo(f"error: {message}", err=True)
    if error is not None and error.details:
        for key, value in sorted(error.details.items()):
            click.echo(f"  {key}: {value}", err=True)
    sys.exit(1)


def _print_run(state: RunState) -> None:
    click.echo(f"run {state.run_id} ({state.pipeline_name}): {state.status.value}")
    for name in sorted(state.jobs):
        job = state.jobs[name]
        line = f"  {name:<20} {_STATUS_MARKS[job.status]}"
        if job.failed_step_index is not None:
            line += f" at step {job.failed_step_index}"
        if not job.required:
            line += " (not required)"
        click.echo(line)
    for entry in state.error_log:
        where = entry.get("job", "run")
        click.echo(f"  ! {where}: {entry.get('message', entry.get('error_code'))}", err=True)


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging")
@click.option("--config", "config_path", default=None, help="Path to pipewright.yaml")
@click.pass_context
def cli(ctx, debug, config_path):
    """Pipewright - local pipeline runner."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
        configure_logging("DEBUG" if debug else config.log_level)
    except (FileNotFoundError, PipewrightError) as e:
        _fail(str(e))
    ctx.obj["config"] = config


@cli.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
def validate(pipeline_file):
    """Validate a pipeline document and print its execution levels."""
    try:
        pipeline = load_pipeline(pipeline_file)
        graph = JobGraph(pipeline.jobs)
    except PipewrightError as e:
        _fail(e.message, e)

    click.echo(f"pipeline {pipeline.name}: {len(graph)} jobs")
    for depth, level in enumerate(graph.levels()):
        click.echo(f"  level {depth}: {', '.join(level)}")


@cli.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--event",
    "event_name",
    type=click.Choice(sorted(EVENT_ALIASES)),
    default="push",
    show_default=True,
    help="Kind of triggering event",
)
@click.option("--ref", default="main", show_default=True, help="Branch or ref of the event")
@click.option("--base-ref", default=None, help="Target branch of a pull request")
@click.option("--sha", default=None, help="Commit being built")
@click.option("--actor", default="local", show_default=True, help="Who triggered the run")
@click.option(
    "--source",
    "source_dir",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Working tree checked out into job workspaces",
)
@click.option(
    "--site-dir",
    default=None,
    type=click.Path(file_okay=False),
    help="Publish deployments into this directory instead of memory",
)
@click.option(
    "--approve",
    "approved_environments",
    multiple=True,
    help="Approve this run for an environment (repeatable)",
)
@click.pass_context
def run(
    ctx,
    pipeline_file,
    event_name,
    ref,
    base_ref,
    sha,
    actor,
    source_dir,
    site_dir,
    approved_environments,
):
    """Run a pipeline for one event."""
    try:
        pipeline = load_pipeline(pipeline_file)
    except PipewrightError as e:
        _fail(e.message, e)

    event = Event(
        kind=EVENT_ALIASES[event_name],
        ref=ref,
        base_ref=base_ref,
        sha=sha,
        actor=actor,
    )
    hosting = DirectoryHostingTarget(site_dir) if site_dir else InMemoryHostingTarget()
    run_id = f"run-{uuid.uuid4().hex[:12]}"

    async def _run() -> Optional[RunState]:
        async with Pipewright(
            ctx.obj["config"],
            source=LocalSourceProvider(source_dir=Path(source_dir)),
            hosting=hosting,
        ) as pw:
            for environment in approved_environments:
                await pw.approve_deployment(environment, run_id, reviewer=actor)
            return await pw.handle_event(pipeline, event, run_id=run_id)

    state = asyncio.run(_run())
    if state is None:
        kind = EVENT_ALIASES[event_name].value
        click.echo(f"event {kind} on {ref} ignored by the pipeline's triggers")
        return

    _print_run(state)
    sys.exit(0 if state.succeeded else 1)


if __name__ == "__main__":
    cli()
