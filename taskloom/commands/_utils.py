"""Shared utilities for taskloom CLI commands."""

from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any, TypeVar

import click
from rich.console import Console

from taskloom.constants import AgentStatus, TaskStatus
from taskloom.exceptions import TaskloomError
from taskloom.workspace import Workspace

console = Console()

F = TypeVar("F", bound=Callable[..., Any])

TASK_COLORS = {
    TaskStatus.OPEN: "cyan",
    TaskStatus.IN_PROGRESS: "yellow",
    TaskStatus.DONE: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.ABANDONED: "dim",
}

AGENT_COLORS = {
    AgentStatus.WORKING: "green",
    AgentStatus.DONE: "blue",
    AgentStatus.FAILED: "red",
    AgentStatus.STOPPED: "yellow",
    AgentStatus.DEAD: "dim",
}


def get_workspace(ctx: click.Context) -> Workspace:
    """Workspace chosen by the top-level ``--dir`` option."""
    return ctx.find_root().obj["workspace"]


def require_initialized(ctx: click.Context) -> Workspace:
    workspace = get_workspace(ctx)
    if not workspace.is_initialized():
        console.print(f"[red]Error:[/red] {workspace.root} is not initialized")
        console.print("Run [cyan]taskloom init[/cyan] first")
        raise SystemExit(1)
    return workspace


def handle_errors(func: F) -> F:
    """Print taskloom errors in red and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            console.print("\n[yellow]Aborted[/yellow]")
            raise SystemExit(130) from None
        except TaskloomError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise SystemExit(1) from None

    return wrapper  # type: ignore[return-value]


def status_text(status: TaskStatus | AgentStatus) -> str:
    colors: dict[Any, str] = TASK_COLORS if isinstance(status, TaskStatus) else AGENT_COLORS
    color = colors.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m{seconds % 60:02d}s"
    return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"
