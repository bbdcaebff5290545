"""Command line interface for running sagaflow workers and inspecting state."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from sagaflow.config import load_config
from sagaflow.constants import TOPIC_CANCEL_EXECUTION
from sagaflow.bus import make_bus
from sagaflow.persistence import get_repository
from sagaflow.transports import SHARED_BACKENDS, get_transport, transport_backend
from sagaflow.worker import build_worker

app = typer.Typer(help="CLI for sagaflow workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
execution_app = typer.Typer(help="Commands for inspecting workflow executions")
deadletter_app = typer.Typer(help="Commands for managing dead-lettered events")

app.add_typer(worker_app, name="worker")
app.add_typer(execution_app, name="execution")
app.add_typer(deadletter_app, name="deadletter")


def _require_shared_transport(config, action: str) -> None:
    """Exit with an error when events published here cannot reach a worker."""
    backend = transport_backend(config)
    if backend not in SHARED_BACKENDS:
        typer.secho(
            f"{action} needs a shared transport ({' or '.join(SHARED_BACKENDS)}); "
            f"configured backend is {backend}",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to the configured level)"
    ),
) -> None:
    """sagaflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.logging.level).upper(),
        format=config.logging.format,
    )


@worker_app.command("run")
def worker_run(
    target: str,
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker for the workflows exposed by TARGET.

    TARGET is ``module:attribute`` naming a Worker, a WorkflowRegistry, or a
    zero-argument callable returning one of them. The worker resumes
    unfinished executions, dispatches events and ticks scheduled jobs.

    Example:
        sagaflow worker run shop.workflows:registry --lifespan 300
    """
    try:
        worker = build_worker(target)
    except (ImportError, ValueError, TypeError) as exc:
        typer.secho(f"Cannot load {target}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Starting worker for: {', '.join(worker.engine.registry.names())}")
    asyncio.run(worker.run(lifespan=lifespan))


@execution_app.command("list")
def execution_list(
    active: bool = typer.Option(False, help="Only show non-terminal executions"),
) -> None:
    """
    List workflow executions with their current state.

    Example:
        sagaflow execution list --active
        # Output: 2f1c...    place-order    order-42    running(1)
    """
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(active_only=active))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.execution_id}\t{execution.workflow_name}\t"
            f"{execution.correlation_key or '-'}\t"
            f"{execution.state.value}({execution.step_index})"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution's state, input and step history."""
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)

    typer.echo(
        f"Execution {execution.execution_id} ({execution.workflow_name}): "
        f"{execution.state.value}"
    )
    if execution.correlation_key:
        typer.echo(f"Correlation key: {execution.correlation_key}")
    if execution.cancelled:
        typer.echo("Cancelled: yes")
    if execution.input:
        typer.echo(f"Input: {json.dumps(execution.input)}")
    for record in execution.steps:
        typer.echo(
            f"- {record.step_name}: {record.outcome.value} "
            f"(attempts={record.attempts})"
            + (f" error={record.error}" if record.error else "")
        )


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """
    Ask the workers to cancel an execution.

    The request is recorded on the execution, where the worker driving it
    picks it up, and published over the transport so an idle execution is
    taken up and compensated. Both need workers that share this database and
    a Redis or RabbitMQ transport.
    """
    config = load_config()
    _require_shared_transport(config, "Cancel requests")
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    if execution.is_terminal or not asyncio.run(repo.request_cancel(execution_id)):
        typer.secho(
            f"Execution already {execution.state.value}", fg=typer.colors.RED
        )
        raise typer.Exit(code=1)

    bus = make_bus(get_transport(config=config), repo, config.bus)

    async def _request() -> None:
        await bus.transport.connect()
        try:
            await bus.publish(
                TOPIC_CANCEL_EXECUTION,
                {"execution_id": execution_id},
                correlation_key=execution.correlation_key,
            )
        finally:
            await bus.transport.disconnect()

    asyncio.run(_request())
    typer.echo(f"Cancellation requested for {execution_id}")


@deadletter_app.command("list")
def deadletter_list() -> None:
    """List events that exhausted their delivery attempts."""
    repo = get_repository()
    dead_letters = asyncio.run(repo.list_dead_letters())
    if not dead_letters:
        typer.echo("No dead letters found")
        return
    for dead_letter in dead_letters:
        typer.echo(
            f"{dead_letter.id}\t{dead_letter.event.topic}\t"
            f"{dead_letter.subscription}\t{dead_letter.error}"
        )


@deadletter_app.command("replay")
def deadletter_replay(dead_letter_id: str) -> None:
    """Republish a dead-lettered event to its subscription."""
    config = load_config()
    _require_shared_transport(config, "Replay")
    repo = get_repository()
    bus = make_bus(get_transport(config=config), repo, config.bus)

    async def _replay():
        await bus.transport.connect()
        try:
            return await bus.replay(dead_letter_id)
        finally:
            await bus.transport.disconnect()

    try:
        event = asyncio.run(_replay())
    except KeyError:
        typer.echo("Dead letter not found")
        raise typer.Exit(code=1)
    typer.echo(f"Replayed event {event.id} on {event.topic}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
