"""taskloom init - create the .taskloom workspace."""

import click

from taskloom.commands._utils import console, get_workspace, handle_errors
from taskloom.config import TaskloomConfig


@click.command()
@click.option("--max-agents", type=int, default=None, help="Concurrency limit to write into config")
@click.option("--executor", default=None, help="Default executor name")
@click.pass_context
@handle_errors
def init(ctx: click.Context, max_agents: int | None, executor: str | None) -> None:
    """Initialize a task graph in the working directory."""
    workspace = get_workspace(ctx)
    created = workspace.graph_store().initialize()

    if not workspace.config_path.exists():
        overrides: dict[str, dict[str, object]] = {"coordinator": {}}
        if max_agents is not None:
            overrides["coordinator"]["max_agents"] = max_agents
        if executor is not None:
            overrides["coordinator"]["executor"] = executor
        TaskloomConfig().merged(overrides).save(workspace.config_path)

    for path in (workspace.agents_dir, workspace.taskloom_dir / "executors"):
        path.mkdir(parents=True, exist_ok=True)

    if created:
        console.print(f"[green]✓[/green] Initialized taskloom in {workspace.taskloom_dir}")
    else:
        console.print(f"[yellow]Already initialized:[/yellow] {workspace.taskloom_dir}")
