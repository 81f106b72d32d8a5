"""Executor boundary: turning a task into a runnable command.

The coordinator knows nothing about what an agent does. An executor config
names a command, its arguments and environment, with ``{{placeholder}}``
variables filled in from the task. Configs live in
``.taskloom/executors/<name>.yaml``; the built-in ``shell`` executor runs the
task's ``exec`` string with ``sh -c``.
"""

from __future__ import annotations

import re
from pathlib import Path

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, ValidationError

from taskloom.constants import AGENTS_DIR, ENV_WORKDIR, EXECUTORS_DIR
from taskloom.exceptions import ExecutorError
from taskloom.launcher_types import LaunchSpec
from taskloom.logging import get_logger
from taskloom.models import Task

logger = get_logger("executor")

SHELL_EXECUTOR = "shell"
_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class ExecutorConfig(BaseModel):
    """How to launch one kind of agent."""

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    working_dir: str | None = None
    prompt_template: str | None = None
    timeout: int | None = Field(default=None, ge=1)


def template_vars(task: Task, agent_id: str, workdir: Path, model: str | None = None) -> dict[str, str]:
    """Variables available to executor templates."""
    return {
        "task_id": task.id,
        "task_title": task.title,
        "task_description": task.description or "",
        "task_exec": task.exec or "",
        "task_skills": ", ".join(task.skills),
        "task_tags": ", ".join(task.tags),
        "loop_iteration": str(task.loop_iteration),
        "agent_id": agent_id,
        "model": task.model or model or "",
        "workdir": str(workdir),
    }


def render(template: str, variables: dict[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left as-is."""
    return _PLACEHOLDER.sub(lambda m: variables.get(m.group(1), m.group(0)), template)


class ExecutorRegistry:
    """Resolves executor names to configs and builds launch specs."""

    def __init__(self, workdir: str | Path = ".") -> None:
        self.workdir = Path(workdir).resolve()
        self.executors_dir = self.workdir / EXECUTORS_DIR
        self.agents_dir = self.workdir / AGENTS_DIR

    def resolve(self, name: str) -> ExecutorConfig:
        """Load the executor config called ``name``.

        Raises:
            ExecutorError: If no config exists or it is invalid
        """
        path = self.executors_dir / f"{name}.yaml"
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
                data.setdefault("name", name)
                return ExecutorConfig(**data)
            except (OSError, yaml.YAMLError, ValidationError, TypeError) as e:
                raise ExecutorError(f"Invalid executor config {path}", name, {"error": str(e)}) from e
        if name == SHELL_EXECUTOR:
            return ExecutorConfig(name=SHELL_EXECUTOR, command="sh", args=["-c", "{{task_exec}}"])
        raise ExecutorError(f"Unknown executor '{name}'", name, {"available": self.available()})

    def available(self) -> list[str]:
        names = {SHELL_EXECUTOR}
        if self.executors_dir.is_dir():
            names.update(p.stem for p in self.executors_dir.glob("*.yaml"))
        return sorted(names)

    def build(self, task: Task, agent_id: str, executor_name: str, model: str | None = None) -> LaunchSpec:
        """Resolve ``executor_name`` and render a LaunchSpec for ``task``.

        Raises:
            ExecutorError: If the executor is unknown or cannot run this task
        """
        config = self.resolve(executor_name)
        if config.name == SHELL_EXECUTOR and not task.exec:
            raise ExecutorError(
                f"Task '{task.id}' has no exec command for the shell executor", executor_name
            )

        variables = template_vars(task, agent_id, self.workdir, model)
        agent_dir = self.agents_dir / agent_id
        env = {key: render(value, variables) for key, value in config.env.items()}
        env[ENV_WORKDIR] = str(self.workdir)

        if config.prompt_template:
            prompt_file = agent_dir / "prompt.txt"
            try:
                agent_dir.mkdir(parents=True, exist_ok=True)
                prompt_file.write_text(render(config.prompt_template, variables))
            except OSError as e:
                raise ExecutorError(
                    f"Cannot write prompt file for task '{task.id}'", executor_name, {"error": str(e)}
                ) from e
            variables["prompt_file"] = str(prompt_file)
            env["TASKLOOM_PROMPT_FILE"] = str(prompt_file)

        command = [render(config.command, variables), *(render(arg, variables) for arg in config.args)]
        working_dir = Path(render(config.working_dir, variables)) if config.working_dir else self.workdir

        return LaunchSpec(
            agent_id=agent_id,
            task_id=task.id,
            command=command,
            executor=config.name,
            env=env,
            working_dir=working_dir,
            output_file=agent_dir / "output.log",
            timeout_seconds=config.timeout,
        )
