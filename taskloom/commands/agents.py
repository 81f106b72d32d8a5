"""Agent commands: agents, spawn, kill, dead-agents, heartbeat."""

from __future__ import annotations

import json

import click
from rich.table import Table

from taskloom import task_ops
from taskloom.commands._utils import (
    console,
    format_duration,
    handle_errors,
    require_initialized,
    status_text,
)
from taskloom.constants import AgentStatus
from taskloom.daemon import is_running, query_daemon
from taskloom.exceptions import DaemonError, NotRunningError
from taskloom.process import OsProcessControl
from taskloom.protocol import KillRequest, SpawnRequest
from taskloom.supervisor import cleanup_dead_agents, find_dead_reason, kill_agent, kill_all_agents, prune_agents


@click.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in AgentStatus]),
    help="Only agents with this status",
)
@click.option("--all", "show_all", is_flag=True, help="Include finished agents")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
@handle_errors
def agents(ctx: click.Context, status_filter: str | None, show_all: bool, json_output: bool) -> None:
    """List registered agents (working agents by default)."""
    workspace = require_initialized(ctx)
    registry = workspace.registry_store().load()
    process = OsProcessControl()

    if status_filter:
        records = registry.filter(status=AgentStatus(status_filter))
    elif show_all:
        records = list(registry.agents.values())
    else:
        records = registry.working()

    if json_output:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        console.print("[dim]No agents[/dim]")
        return

    table = Table(title=f"Agents ({len(records)})")
    table.add_column("Agent", style="cyan")
    table.add_column("PID", justify="right")
    table.add_column("Task")
    table.add_column("Executor")
    table.add_column("Status")
    table.add_column("Uptime", justify="right")
    table.add_column("Alive")
    for record in records:
        alive = process.is_alive(record.pid) if record.is_working else False
        table.add_row(
            record.id,
            str(record.pid),
            record.task_id,
            record.executor,
            status_text(record.status),
            format_duration(record.uptime_seconds()) if record.is_working else "-",
            "[green]yes[/green]" if alive else "[red]no[/red]",
        )
    console.print(table)


@click.command()
@click.argument("task_id")
@click.option("--executor", help="Executor to use for this spawn")
@click.option("--model", help="Model hint")
@click.option("--timeout", type=int, help="Seconds before the agent is killed and the task reclaimed")
@click.pass_context
@handle_errors
def spawn(ctx: click.Context, task_id: str, executor: str | None, model: str | None, timeout: int | None) -> None:
    """Ask the running daemon to spawn an agent for TASK_ID now."""
    workspace = require_initialized(ctx)
    response = query_daemon(workspace, SpawnRequest(task_id=task_id, executor=executor, model=model, timeout=timeout))
    if not response.ok:
        raise DaemonError(response.error or "spawn failed")
    data = response.data
    console.print(f"[green]✓[/green] Spawned {data['agent_id']} (pid {data['pid']}) for {task_id}")
    if data.get("output_file"):
        console.print(f"  Output: {data['output_file']}")


@click.command()
@click.argument("agent_id", required=False)
@click.option("--all", "kill_all", is_flag=True, help="Kill every working agent")
@click.option("--force", is_flag=True, help="SIGKILL immediately instead of SIGTERM first")
@click.pass_context
@handle_errors
def kill(ctx: click.Context, agent_id: str | None, kill_all: bool, force: bool) -> None:
    """Kill an agent and release its task."""
    workspace = require_initialized(ctx)
    if not agent_id and not kill_all:
        console.print("[red]Error:[/red] Give an AGENT_ID or --all")
        raise SystemExit(1)

    try:
        response = query_daemon(workspace, KillRequest(agent_id=agent_id, all=kill_all, force=force))
        if not response.ok:
            raise DaemonError(response.error or "kill failed")
        killed = response.data.get("killed", [])
    except NotRunningError:
        config = workspace.load_config()
        graph_store, registry_store = workspace.graph_store(), workspace.registry_store()
        grace = config.coordinator.kill_grace_seconds
        if kill_all:
            results = kill_all_agents(graph_store, registry_store, OsProcessControl(), force, grace)
        else:
            results = [kill_agent(graph_store, registry_store, OsProcessControl(), agent_id or "", force, grace)]
        killed = [r.to_dict() for r in results]

    if not killed:
        console.print("[dim]No agents killed[/dim]")
    for entry in killed:
        released = f", released {entry['task_id']}" if entry["released"] else ""
        forced = " (forced)" if entry["forced"] else ""
        console.print(f"[green]✓[/green] Killed {entry['agent_id']}{forced}{released}")


@click.command(name="dead-agents")
@click.option("--cleanup", is_flag=True, help="Mark dead agents and reclaim their tasks")
@click.option("--prune", is_flag=True, help="Remove dead and stopped records from the registry")
@click.pass_context
@handle_errors
def dead_agents(ctx: click.Context, cleanup: bool, prune: bool) -> None:
    """Show agents whose process is gone; optionally reclaim and prune."""
    workspace = require_initialized(ctx)
    config = workspace.load_config()
    process = OsProcessControl()
    threshold = config.coordinator.heartbeat_timeout_seconds

    if cleanup:
        if is_running(workspace):
            console.print("[yellow]Note:[/yellow] the daemon also runs cleanup on every tick")
        dead = cleanup_dead_agents(workspace.graph_store(), workspace.registry_store(), process, threshold)
        if not dead:
            console.print("[green]✓[/green] No dead agents")
        for entry in dead:
            reclaimed = f", reclaimed {entry.task_id}" if entry.reclaimed else ""
            console.print(f"[yellow]☠[/yellow] {entry.agent_id} ({entry.reason.value}){reclaimed}")
    else:
        registry = workspace.registry_store().load()
        suspects = [(a, find_dead_reason(a, process, threshold)) for a in registry.working()]
        suspects = [(a, r) for a, r in suspects if r is not None]
        if not suspects:
            console.print("[green]✓[/green] No dead agents")
        for agent, reason in suspects:
            console.print(f"[yellow]☠[/yellow] {agent.id} (pid {agent.pid}, task {agent.task_id}): {reason.value}")
        if suspects:
            console.print("Run with [cyan]--cleanup[/cyan] to reclaim their tasks")

    if prune:
        removed = prune_agents(workspace.registry_store())
        console.print(f"[green]✓[/green] Pruned {len(removed)} record(s)")


@click.command()
@click.argument("agent_id", envvar="TASKLOOM_AGENT_ID")
@click.pass_context
@handle_errors
def heartbeat(ctx: click.Context, agent_id: str) -> None:
    """Record a heartbeat for AGENT_ID (defaults to $TASKLOOM_AGENT_ID)."""
    workspace = require_initialized(ctx)
    timestamp = task_ops.heartbeat(workspace, agent_id)
    console.print(f"[green]♥[/green] {agent_id} at {timestamp}")
