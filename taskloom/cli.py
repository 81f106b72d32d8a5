"""Taskloom command-line interface."""

import click

from taskloom import __version__
from taskloom.commands import (
    abandon,
    add,
    agents,
    check,
    claim,
    dead_agents,
    done,
    fail,
    heartbeat,
    init,
    kill,
    link,
    list_tasks,
    loop,
    ready,
    retry,
    service,
    show,
    spawn,
    unclaim,
)
from taskloom.logging import setup_logging
from taskloom.workspace import Workspace


@click.group()
@click.version_option(version=__version__, prog_name="taskloom")
@click.option(
    "--dir",
    "workdir",
    default=".",
    envvar="TASKLOOM_DIR",
    type=click.Path(file_okay=False),
    help="Working directory containing .taskloom (default: current directory)",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, workdir: str, verbose: bool) -> None:
    """Taskloom - schedule agents over a task dependency graph."""
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = Workspace(workdir)
    if verbose:
        setup_logging(level="debug", console_output=True, json_output=False)


cli.add_command(init)
cli.add_command(add)
cli.add_command(link)
cli.add_command(loop)
cli.add_command(claim)
cli.add_command(unclaim)
cli.add_command(done)
cli.add_command(fail)
cli.add_command(retry)
cli.add_command(abandon)
cli.add_command(ready)
cli.add_command(list_tasks)
cli.add_command(show)
cli.add_command(check)
cli.add_command(agents)
cli.add_command(spawn)
cli.add_command(kill)
cli.add_command(dead_agents)
cli.add_command(heartbeat)
cli.add_command(service)


if __name__ == "__main__":
    cli()
