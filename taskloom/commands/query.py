"""Read-only graph commands: ready, list, show, check."""

from __future__ import annotations

import json

import click
from rich.table import Table

from taskloom.commands._utils import console, handle_errors, require_initialized, status_text
from taskloom.constants import TaskStatus
from taskloom.scheduler import compute_ready, count_by_status, unmet_blockers


@click.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
@handle_errors
def ready(ctx: click.Context, json_output: bool) -> None:
    """List tasks that are ready to dispatch, in dispatch order."""
    workspace = require_initialized(ctx)
    graph = workspace.graph_store().load()
    ids = compute_ready(graph)

    if json_output:
        click.echo(json.dumps(ids))
        return
    if not ids:
        console.print("[dim]No ready tasks[/dim]")
        return
    for task_id in ids:
        task = graph.require(task_id)
        console.print(f"[cyan]{task.id}[/cyan]  {task.title}")


@click.command(name="list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in TaskStatus]),
    help="Only tasks with this status",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
@handle_errors
def list_tasks(ctx: click.Context, status_filter: str | None, json_output: bool) -> None:
    """List tasks in the graph."""
    workspace = require_initialized(ctx)
    graph = workspace.graph_store().load()
    tasks = [t for t in graph if status_filter is None or t.status.value == status_filter]

    if json_output:
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return

    table = Table(title=f"Tasks ({len(tasks)})")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("Assigned")
    table.add_column("Waiting on")
    table.add_column("Iter", justify="right")
    for task in tasks:
        waiting = unmet_blockers(graph, task) if task.status is TaskStatus.OPEN else []
        table.add_row(
            task.id,
            status_text(task.status),
            task.title,
            task.assigned or "-",
            ", ".join(waiting) or "-",
            str(task.loop_iteration) if task.loop_edges or task.loop_iteration else "-",
        )
    console.print(table)

    counts = count_by_status(graph)
    console.print("  ".join(f"{k}: {v}" for k, v in counts.items() if v))


@click.command()
@click.argument("task_id")
@click.pass_context
@handle_errors
def show(ctx: click.Context, task_id: str) -> None:
    """Show one task with its edges and log."""
    workspace = require_initialized(ctx)
    graph = workspace.graph_store().load()
    task = graph.require(task_id)

    console.print(f"\n[bold]{task.id}[/bold] - {task.title}")
    console.print(f"  Status:      {status_text(task.status)}")
    if task.assigned:
        console.print(f"  Assigned:    {task.assigned}")
    if task.description:
        console.print(f"  Description: {task.description}")
    if task.blocked_by:
        console.print(f"  Blocked by:  {', '.join(task.blocked_by)}")
    if task.blocks:
        console.print(f"  Blocks:      {', '.join(task.blocks)}")
    for edge in task.loop_edges:
        guard = edge.guard.to_dict() if edge.guard else "always"
        console.print(f"  Loops to:    {edge.target} (max {edge.max_iterations}, guard {guard})")
    if task.loop_iteration:
        console.print(f"  Iteration:   {task.loop_iteration}")
    if task.retry_count:
        console.print(f"  Failures:    {task.retry_count}" + (f"/{task.max_retries}" if task.max_retries else ""))
    if task.failure_reason:
        console.print(f"  Reason:      {task.failure_reason}")
    if task.log:
        console.print("\n  [bold]Log[/bold]")
        for entry in task.log:
            actor = f" ({entry.actor})" if entry.actor else ""
            console.print(f"  [dim]{entry.timestamp}[/dim]{actor} {entry.message}")


@click.command()
@click.pass_context
@handle_errors
def check(ctx: click.Context) -> None:
    """Validate graph structure: dangling edges, broken inverses, cycles."""
    workspace = require_initialized(ctx)
    problems = workspace.graph_store().load().validate()
    if not problems:
        console.print("[green]✓[/green] Graph is consistent")
        return
    for problem in problems:
        console.print(f"[red]✗[/red] {problem}")
    raise SystemExit(1)
