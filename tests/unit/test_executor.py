"""Tests for executor resolution and launch spec rendering."""

import pytest
import yaml

from taskloom.constants import ENV_WORKDIR
from taskloom.exceptions import ExecutorError
from taskloom.executor import ExecutorRegistry, render, template_vars
from tests.helpers.task_builders import make_task


@pytest.fixture
def executors(tmp_path) -> ExecutorRegistry:
    return ExecutorRegistry(tmp_path)


def write_executor(registry: ExecutorRegistry, name: str, data: dict) -> None:
    registry.executors_dir.mkdir(parents=True, exist_ok=True)
    (registry.executors_dir / f"{name}.yaml").write_text(yaml.safe_dump(data))


class TestRender:
    """Tests for placeholder rendering."""

    def test_known_and_unknown(self) -> None:
        assert render("{{ a }}-{{b}}-{{c}}", {"a": "1", "b": "2"}) == "1-2-{{c}}"

    def test_template_vars(self, tmp_path) -> None:
        task = make_task("a", skills=["py", "sql"], model="big", loop_iteration=2)
        variables = template_vars(task, "agent-4", tmp_path, model="small")
        assert variables["task_skills"] == "py, sql"
        assert variables["model"] == "big"
        assert variables["loop_iteration"] == "2"
        assert variables["agent_id"] == "agent-4"


class TestResolve:
    """Tests for ExecutorRegistry.resolve."""

    def test_builtin_shell(self, executors: ExecutorRegistry) -> None:
        config = executors.resolve("shell")
        assert config.command == "sh"
        assert config.args == ["-c", "{{task_exec}}"]

    def test_from_yaml(self, executors: ExecutorRegistry) -> None:
        write_executor(executors, "coder", {"command": "coder-cli", "args": ["--model", "{{model}}"]})
        config = executors.resolve("coder")
        assert config.name == "coder"
        assert executors.available() == ["coder", "shell"]

    def test_unknown(self, executors: ExecutorRegistry) -> None:
        with pytest.raises(ExecutorError) as exc_info:
            executors.resolve("nope")
        assert exc_info.value.executor == "nope"
        assert exc_info.value.details["available"] == ["shell"]

    def test_invalid_yaml_config(self, executors: ExecutorRegistry) -> None:
        write_executor(executors, "broken", {"args": ["x"]})
        with pytest.raises(ExecutorError, match="Invalid executor config"):
            executors.resolve("broken")


class TestBuild:
    """Tests for ExecutorRegistry.build."""

    def test_shell_spec(self, executors: ExecutorRegistry, tmp_path) -> None:
        spec = executors.build(make_task("a", exec="make test"), "agent-1", "shell")
        assert spec.command == ["sh", "-c", "make test"]
        assert spec.task_id == "a"
        assert spec.executor == "shell"
        assert spec.working_dir == tmp_path.resolve()
        assert spec.output_file == executors.agents_dir / "agent-1" / "output.log"
        assert spec.env[ENV_WORKDIR] == str(tmp_path.resolve())

    def test_shell_requires_exec(self, executors: ExecutorRegistry) -> None:
        with pytest.raises(ExecutorError, match="no exec command"):
            executors.build(make_task("a", exec=None), "agent-1", "shell")

    def test_custom_executor_with_prompt(self, executors: ExecutorRegistry) -> None:
        write_executor(
            executors,
            "coder",
            {
                "command": "coder-cli",
                "args": ["--model", "{{model}}", "--prompt-file", "{{prompt_file}}"],
                "env": {"TASK": "{{task_id}}"},
                "prompt_template": "Do {{task_title}} (iteration {{loop_iteration}})",
                "timeout": 120,
            },
        )
        task = make_task("fix-bug", exec=None)

        spec = executors.build(task, "agent-2", "coder", model="m1")

        prompt_file = executors.agents_dir / "agent-2" / "prompt.txt"
        assert prompt_file.read_text() == "Do FIX-BUG (iteration 0)"
        assert spec.command == ["coder-cli", "--model", "m1", "--prompt-file", str(prompt_file)]
        assert spec.env["TASK"] == "fix-bug"
        assert spec.timeout_seconds == 120

    def test_unwritable_prompt_file(self, executors: ExecutorRegistry) -> None:
        write_executor(executors, "coder", {"command": "coder", "prompt_template": "Do {{task_id}}"})
        executors.agents_dir.parent.mkdir(parents=True, exist_ok=True)
        executors.agents_dir.write_text("not a directory")

        with pytest.raises(ExecutorError, match="Cannot write prompt file") as exc_info:
            executors.build(make_task("a"), "agent-1", "coder")
        assert exc_info.value.executor == "coder"
        assert "error" in exc_info.value.details
