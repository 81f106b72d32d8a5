"""taskloom service - run and control the coordinator daemon."""

from __future__ import annotations

import json

import click
import yaml  # type: ignore[import-untyped]
from rich.table import Table

from taskloom.commands._utils import console, format_duration, handle_errors, require_initialized
from taskloom.coordinator import Coordinator, DaemonContext
from taskloom.daemon import (
    is_running,
    query_daemon,
    read_service_state,
    run_foreground,
    start_detached,
    stop_daemon,
)
from taskloom.exceptions import ConfigurationError, DaemonError, NotRunningError, ProtocolError
from taskloom.protocol import GraphChangedRequest, PauseRequest, ReconfigureRequest, ResumeRequest, StatusRequest


@click.group()
def service() -> None:
    """Run and control the coordinator daemon."""


@service.command()
@click.pass_context
@handle_errors
def start(ctx: click.Context) -> None:
    """Start the daemon in the background."""
    workspace = require_initialized(ctx)
    pid = start_detached(workspace)
    console.print(f"[green]✓[/green] Coordinator started (pid {pid})")


@service.command()
@click.pass_context
@handle_errors
def run(ctx: click.Context) -> None:
    """Run the daemon in the foreground."""
    workspace = require_initialized(ctx)
    run_foreground(workspace)


@service.command()
@click.option("--kill-agents", is_flag=True, help="Also kill running agents")
@click.pass_context
@handle_errors
def stop(ctx: click.Context, kill_agents: bool) -> None:
    """Stop the daemon. Agents keep running unless --kill-agents is given."""
    workspace = require_initialized(ctx)
    if stop_daemon(workspace, kill_agents=kill_agents):
        console.print("[green]✓[/green] Coordinator stopped")
    else:
        console.print("[yellow]Coordinator is not running[/yellow]")


@service.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
@handle_errors
def status(ctx: click.Context, json_output: bool) -> None:
    """Show daemon status, agent counts and task counts."""
    workspace = require_initialized(ctx)
    try:
        response = query_daemon(workspace, StatusRequest())
    except (NotRunningError, ProtocolError) as e:
        stale = read_service_state(workspace)
        if json_output:
            click.echo(json.dumps({"running": False, "error": str(e)}))
            return
        console.print("[yellow]Coordinator is not running[/yellow]")
        if stale is not None:
            console.print(f"[dim]Stale state from pid {stale.pid} (started {stale.started_at})[/dim]")
        return

    if not response.ok:
        raise DaemonError(response.error or "status failed")
    data = response.data
    if json_output:
        click.echo(json.dumps(data, indent=2))
        return

    state = "[yellow]paused[/yellow]" if data.get("paused") else "[green]running[/green]"
    console.print(f"\n[bold]Coordinator[/bold] {state}  pid {data['pid']}  up {format_duration(data['uptime_seconds'])}")
    console.print(f"  Ticks: {data['ticks']}  max agents: {data['max_agents']}  poll: {data['poll_interval']}s")

    table = Table(show_header=True)
    table.add_column("Agents")
    table.add_column("Count", justify="right")
    table.add_column("Tasks")
    table.add_column("Count", justify="right")
    agent_rows = list(data["agents"].items())
    task_rows = list(data["tasks"].items())
    for i in range(max(len(agent_rows), len(task_rows))):
        a = agent_rows[i] if i < len(agent_rows) else ("", "")
        t = task_rows[i] if i < len(task_rows) else ("", "")
        table.add_row(a[0], str(a[1]), t[0], str(t[1]))
    console.print(table)

    for task_id, info in (data.get("cooldowns") or {}).items():
        console.print(f"  [yellow]cooldown[/yellow] {task_id}: {info['failures']} failure(s), {info['remaining_seconds']}s left")


@service.command()
@click.pass_context
@handle_errors
def pause(ctx: click.Context) -> None:
    """Stop dispatching new agents (cleanup continues)."""
    workspace = require_initialized(ctx)
    response = query_daemon(workspace, PauseRequest())
    if not response.ok:
        raise DaemonError(response.error or "pause failed")
    console.print("[yellow]⏸[/yellow] Dispatch paused")


@service.command()
@click.pass_context
@handle_errors
def resume(ctx: click.Context) -> None:
    """Resume dispatching."""
    workspace = require_initialized(ctx)
    response = query_daemon(workspace, ResumeRequest())
    if not response.ok:
        raise DaemonError(response.error or "resume failed")
    console.print("[green]▶[/green] Dispatch resumed")


@service.command()
@click.argument("settings", nargs=-1, required=True)
@click.option("--persist", is_flag=True, help="Also write the change to config.yaml")
@click.pass_context
@handle_errors
def reconfigure(ctx: click.Context, settings: tuple[str, ...], persist: bool) -> None:
    """Change running settings, e.g. ``coordinator.max_agents=2``."""
    workspace = require_initialized(ctx)
    partial = parse_settings(settings)
    response = query_daemon(workspace, ReconfigureRequest(config=partial, persist=persist))
    if not response.ok:
        raise ConfigurationError(response.error or "reconfigure failed")
    console.print("[green]✓[/green] Reconfigured" + (" and saved" if persist else ""))


@service.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
@handle_errors
def tick(ctx: click.Context, json_output: bool) -> None:
    """Run a single coordinator tick in the foreground."""
    workspace = require_initialized(ctx)
    if is_running(workspace):
        query_daemon(workspace, GraphChangedRequest())
        console.print("[yellow]Daemon is running;[/yellow] woke it for an immediate tick instead")
        return

    result = Coordinator(DaemonContext.create(workspace)).tick()
    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    for dead in result.dead_agents:
        console.print(f"[yellow]☠[/yellow] {dead.agent_id} dead ({dead.reason.value})")
    for gate in result.gates_inserted:
        console.print(f"[cyan]+[/cyan] gate {gate}")
    for dispatch in result.dispatched:
        console.print(f"[green]▶[/green] {dispatch.agent_id} → {dispatch.task_id} (pid {dispatch.pid})")
    for task_id, error in result.spawn_failures.items():
        console.print(f"[red]✗[/red] {task_id}: {error}")
    if result.dispatch_skipped:
        console.print(f"[dim]Dispatch skipped: {result.dispatch_skipped}[/dim]")
    console.print(f"Ready: {len(result.ready)}  working: {result.working + len(result.dispatched)}")


def parse_settings(settings: tuple[str, ...]) -> dict[str, object]:
    """Turn ``section.key=value`` pairs into a nested mapping. Values are YAML scalars."""
    partial: dict[str, object] = {}
    for item in settings:
        if "=" not in item:
            raise ConfigurationError(f"Expected section.key=value, got '{item}'")
        dotted, raw = item.split("=", 1)
        keys = dotted.strip().split(".")
        node = partial
        for key in keys[:-1]:
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                raise ConfigurationError(f"Conflicting setting '{dotted}'")
            node = child
        node[keys[-1]] = yaml.safe_load(raw)
    return partial
