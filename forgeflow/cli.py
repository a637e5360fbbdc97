"""Command line interface for running forgeflow workers and inspecting runs."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from forgeflow.persistence import RunStatus, get_repository
from forgeflow.registry import REGISTRY
from forgeflow.runtime import create_runtime, load_services

app = typer.Typer(help="CLI for forgeflow workflows")

worker_app = typer.Typer(help="Commands for running workers")
workflow_app = typer.Typer(help="Commands for inspecting workflow runs")
timers_app = typer.Typer(help="Commands for durable timers")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(timers_app, name="timers")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level for the process"),
) -> None:
    """Forgeflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _runtime(services: Optional[str]):
    return create_runtime(services=load_services(services) if services else None)


@worker_app.command("run")
def worker_run(
    services: Optional[str] = typer.Option(
        None, help="Import path 'module:attribute' of the WorkflowServices to inject"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker process.

    Consumes work items from the configured transport, advances runs and
    fires due timers.

    Example:
        forgeflow worker run --services myapp.wiring:build_services
    """
    runtime = _runtime(services)
    typer.echo(f"Starting worker on {runtime.dispatcher.topic}")
    asyncio.run(runtime.worker.start(lifespan=lifespan))


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to bind"),
    services: Optional[str] = typer.Option(
        None, help="Import path 'module:attribute' of the WorkflowServices to inject"
    ),
) -> None:
    """Serve the trigger/resume/status HTTP API."""
    import uvicorn

    from forgeflow.api import create_app

    uvicorn.run(create_app(_runtime(services)), host=host, port=port)


@workflow_app.command("list")
def workflow_list(
    status: Optional[RunStatus] = typer.Option(None, help="Only runs with this status"),
    archived: bool = typer.Option(False, help="Include archived runs"),
) -> None:
    """
    List workflow runs with their current status.

    Example:
        forgeflow workflow list --status failed
        # Output: 6f1c...    mint    elig-123    failed
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(status=status, include_archived=archived))
    if not runs:
        typer.echo("No workflow runs found")
        return
    for run in runs:
        typer.echo(
            f"{run.run_id}\t{run.definition_name}\t{run.idempotency_key}\t{run.status.value}"
        )


@workflow_app.command("show")
def workflow_show(run_id: str) -> None:
    """Show a run, its step history and timers."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Workflow run not found")
        raise typer.Exit(code=1)
    steps = asyncio.run(repo.list_steps(run_id))
    timers = asyncio.run(repo.list_timers(run_id))

    typer.echo(f"Run {run.run_id} ({run.definition_name}): {run.status.value}")
    typer.echo(f"Key: {run.idempotency_key}")
    typer.echo(f"Input: {json.dumps(run.input, sort_keys=True)}")
    if run.error:
        typer.echo(f"Error: {run.error.code} at {run.error.step_name}: {run.error.message}")
    if run.result is not None:
        typer.echo(f"Result: {json.dumps(run.result, sort_keys=True)}")
    for step in steps:
        line = f"- [{step.step_index}] {step.step_name} #{step.attempt}: {step.status.value}"
        if step.error:
            line += f" ({step.error.get('code')}: {step.error.get('message')})"
        typer.echo(line)
    for timer in timers:
        state = "consumed" if timer.consumed else "pending"
        typer.echo(
            f"* {timer.kind.value} timer for step {timer.step_index} at "
            f"{timer.wake_at.isoformat()} ({state})"
        )


@workflow_app.command("archive")
def workflow_archive(run_id: str) -> None:
    """Archive a completed or failed run."""
    repo = get_repository()
    if not asyncio.run(repo.archive_run(run_id)):
        typer.secho("Only existing terminal runs can be archived", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Archived {run_id}")


@timers_app.command("fire")
def timers_fire(
    services: Optional[str] = typer.Option(
        None, help="Import path 'module:attribute' of the WorkflowServices to inject"
    ),
) -> None:
    """Resume every run whose timer is due, once."""
    runtime = _runtime(services)
    run_ids = asyncio.run(runtime.scheduler.fire_due())
    typer.echo(f"Resumed {len(run_ids)} run(s)")
    for run_id in run_ids:
        typer.echo(run_id)


@app.command("recover")
def recover(
    services: Optional[str] = typer.Option(
        None, help="Import path 'module:attribute' of the WorkflowServices to inject"
    ),
) -> None:
    """Re-dispatch runs stuck past the stale grace period."""
    runtime = _runtime(services)
    run_ids = asyncio.run(runtime.scheduler.sweep_stale())
    typer.echo(f"Re-dispatched {len(run_ids)} run(s)")
    for run_id in run_ids:
        typer.echo(run_id)


@app.command("definitions")
def definitions() -> None:
    """List registered workflow definitions and their steps."""
    for definition in sorted(REGISTRY, key=lambda d: d.name):
        suffix = f" - {definition.description}" if definition.description else ""
        typer.echo(f"{definition.name}{suffix}")
        for index, step in enumerate(definition.plan()):
            typer.echo(f"  {index}. {step.name} ({step.kind})")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
