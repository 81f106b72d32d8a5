"""Task mutation commands: add, link, loop, claim, unclaim, done, fail, retry, abandon."""

from __future__ import annotations

import os

import click

from taskloom import task_ops
from taskloom.commands._utils import console, handle_errors, require_initialized, status_text
from taskloom.constants import ENV_AGENT_ID, TaskStatus
from taskloom.exceptions import LoopEdgeError
from taskloom.loops import parse_delay
from taskloom.models import LoopGuard


def parse_guard(text: str | None) -> LoopGuard | None:
    """Parse ``TASK=STATUS``, ``iter<N`` or ``always``.

    Raises:
        LoopEdgeError: On any other form
    """
    if not text:
        return None
    text = text.strip()
    if text == "always":
        return LoopGuard.always()
    if text.startswith("iter<"):
        try:
            return LoopGuard.iteration_less_than(int(text[len("iter<"):]))
        except ValueError as e:
            raise LoopEdgeError(f"Invalid iteration guard '{text}'") from e
    if "=" in text:
        task_id, status = text.split("=", 1)
        try:
            return LoopGuard.task_status(task_id.strip(), TaskStatus(status.strip()))
        except ValueError as e:
            raise LoopEdgeError(f"Unknown status in guard '{text}'") from e
    raise LoopEdgeError(f"Invalid guard '{text}': use TASK=STATUS, iter<N or always")


def _actor(actor: str | None) -> str | None:
    return actor or os.environ.get(ENV_AGENT_ID)


@click.command()
@click.argument("title")
@click.option("--id", "task_id", help="Task id (default: slug of the title)")
@click.option("--blocked-by", "-b", multiple=True, help="Blocking task id (repeatable)")
@click.option("--description", "-d", help="Task description")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--skill", "skills", multiple=True, help="Required skill (repeatable)")
@click.option("--exec", "exec_cmd", help="Shell command run by the shell executor")
@click.option("--executor", help="Executor override for this task")
@click.option("--model", help="Model hint passed to the executor")
@click.option("--agent", help="Explicit agent identity (skips assignment gating)")
@click.option("--max-retries", type=int, help="Retry budget after failures")
@click.option("--not-before", help="ISO 8601 time before which the task is not ready")
@click.pass_context
@handle_errors
def add(
    ctx: click.Context,
    title: str,
    task_id: str | None,
    blocked_by: tuple[str, ...],
    description: str | None,
    tags: tuple[str, ...],
    skills: tuple[str, ...],
    exec_cmd: str | None,
    executor: str | None,
    model: str | None,
    agent: str | None,
    max_retries: int | None,
    not_before: str | None,
) -> None:
    """Add a task to the graph.

    Examples:

        taskloom add "Write parser" --exec "make parser"

        taskloom add "Review parser" -b write-parser
    """
    workspace = require_initialized(ctx)
    task = task_ops.add_task(
        workspace,
        title,
        task_id=task_id,
        blocked_by=list(blocked_by),
        description=description,
        tags=list(tags),
        skills=list(skills),
        exec_cmd=exec_cmd,
        executor=executor,
        model=model,
        agent=agent,
        max_retries=max_retries,
        not_before=not_before,
    )
    console.print(f"[green]✓[/green] Added [bold]{task.id}[/bold]")


@click.command()
@click.argument("task_id")
@click.argument("blocker_id")
@click.option("--remove", is_flag=True, help="Remove the edge instead")
@click.pass_context
@handle_errors
def link(ctx: click.Context, task_id: str, blocker_id: str, remove: bool) -> None:
    """Make TASK_ID blocked by BLOCKER_ID."""
    workspace = require_initialized(ctx)
    if remove:
        task_ops.remove_dependency(workspace, task_id, blocker_id)
        console.print(f"[green]✓[/green] {task_id} no longer blocked by {blocker_id}")
    else:
        task_ops.add_dependency(workspace, task_id, blocker_id)
        console.print(f"[green]✓[/green] {task_id} is now blocked by {blocker_id}")


@click.command()
@click.argument("source_id")
@click.argument("target_id")
@click.option("--max-iterations", "-n", type=int, required=True, help="Maximum re-activations")
@click.option("--guard", "-g", help="TASK=STATUS, iter<N or always (default: always)")
@click.option("--delay", help="Delay before the target is ready again (30s, 5m, 1h, 1d)")
@click.pass_context
@handle_errors
def loop(
    ctx: click.Context,
    source_id: str,
    target_id: str,
    max_iterations: int,
    guard: str | None,
    delay: str | None,
) -> None:
    """Re-open TARGET_ID when SOURCE_ID completes, at most --max-iterations times."""
    workspace = require_initialized(ctx)
    if delay:
        try:
            parse_delay(delay)
        except ValueError as e:
            raise LoopEdgeError(str(e)) from e
    edge = task_ops.add_loop(workspace, source_id, target_id, max_iterations, parse_guard(guard), delay)
    console.print(
        f"[green]✓[/green] {source_id} loops to {edge.target} (max {edge.max_iterations})"
    )


@click.command()
@click.argument("task_id")
@click.option("--actor", help="Who is claiming (default: $TASKLOOM_AGENT_ID or $USER)")
@click.pass_context
@handle_errors
def claim(ctx: click.Context, task_id: str, actor: str | None) -> None:
    """Claim an open task (Open -> in-progress)."""
    workspace = require_initialized(ctx)
    who = _actor(actor) or os.environ.get("USER", "user")
    task = task_ops.claim(workspace, task_id, who)
    console.print(f"[green]✓[/green] {task.id} claimed by {task.assigned}")


@click.command()
@click.argument("task_id")
@click.option("--reason", help="Why the claim is released")
@click.pass_context
@handle_errors
def unclaim(ctx: click.Context, task_id: str, reason: str | None) -> None:
    """Release an in-progress task back to open."""
    workspace = require_initialized(ctx)
    task = task_ops.unclaim(workspace, task_id, reason)
    console.print(f"[green]✓[/green] {task.id} is {status_text(task.status)}")


@click.command()
@click.argument("task_id")
@click.option("--actor", help="Who completed the task")
@click.pass_context
@handle_errors
def done(ctx: click.Context, task_id: str, actor: str | None) -> None:
    """Mark an in-progress task done and fire its loop edges."""
    workspace = require_initialized(ctx)
    reopened = task_ops.done(workspace, task_id, actor=_actor(actor))
    console.print(f"[green]✓[/green] {task_id} done")
    for other in reopened:
        console.print(f"  [cyan]↺[/cyan] re-opened {other}")


@click.command()
@click.argument("task_id")
@click.option("--reason", help="Failure reason")
@click.option("--actor", help="Who is reporting the failure")
@click.pass_context
@handle_errors
def fail(ctx: click.Context, task_id: str, reason: str | None, actor: str | None) -> None:
    """Mark an in-progress task failed."""
    workspace = require_initialized(ctx)
    task = task_ops.fail(workspace, task_id, reason, actor=_actor(actor))
    console.print(f"[red]✗[/red] {task.id} failed (failures: {task.retry_count})")


@click.command()
@click.argument("task_id")
@click.pass_context
@handle_errors
def retry(ctx: click.Context, task_id: str) -> None:
    """Re-open a failed task."""
    workspace = require_initialized(ctx)
    task = task_ops.retry(workspace, task_id)
    remaining = ""
    if task.max_retries is not None:
        remaining = f" ({task.max_retries - task.retry_count} retries left after this)"
    console.print(f"[green]✓[/green] {task.id} re-opened{remaining}")


@click.command()
@click.argument("task_id")
@click.option("--reason", help="Why the task is abandoned")
@click.pass_context
@handle_errors
def abandon(ctx: click.Context, task_id: str, reason: str | None) -> None:
    """Abandon a task permanently."""
    workspace = require_initialized(ctx)
    task = task_ops.abandon(workspace, task_id, reason)
    console.print(f"[dim]{task.id} abandoned[/dim]")
