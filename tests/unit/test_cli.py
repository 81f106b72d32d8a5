"""Unit tests for the taskloom CLI."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from taskloom.cli import cli
from taskloom.commands.service import parse_settings
from taskloom.constants import TaskStatus
from taskloom.exceptions import NotRunningError
from taskloom.workspace import Workspace


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def workdir(tmp_path: Path, runner: CliRunner) -> Path:
    """Initialized working directory."""
    result = runner.invoke(cli, ["--dir", str(tmp_path), "init"])
    assert result.exit_code == 0, result.output
    return tmp_path


def invoke(runner: CliRunner, workdir: Path, *args: str):
    return runner.invoke(cli, ["--dir", str(workdir), *args])


class TestCliGroup:
    """Tests for the main CLI group."""

    def test_help_lists_commands(self, runner: CliRunner) -> None:
        """Test help shows the registered commands."""
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("init", "add", "ready", "loop", "agents", "dead-agents", "service"):
            assert command in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "taskloom" in result.output

    def test_uninitialized(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test commands refuse to run before init."""
        result = invoke(runner, tmp_path, "ready")
        assert result.exit_code == 1
        assert "taskloom init" in result.output


class TestInit:
    """Tests for taskloom init."""

    def test_creates_layout(self, runner: CliRunner, tmp_path: Path) -> None:
        result = invoke(runner, tmp_path, "init", "--max-agents", "2")
        assert result.exit_code == 0
        workspace = Workspace(tmp_path)
        assert workspace.graph_path.exists()
        assert workspace.load_config().coordinator.max_agents == 2
        assert (workspace.taskloom_dir / "executors").is_dir()

    def test_idempotent(self, runner: CliRunner, workdir: Path) -> None:
        result = invoke(runner, workdir, "init")
        assert result.exit_code == 0
        assert "Already initialized" in result.output


class TestTaskCommands:
    """Tests for task mutation and query commands."""

    def test_add_and_ready(self, runner: CliRunner, workdir: Path) -> None:
        """Test added tasks show up in dispatch order."""
        assert invoke(runner, workdir, "add", "Write parser", "--exec", "true").exit_code == 0
        assert invoke(runner, workdir, "add", "Review", "--id", "review", "-b", "write-parser").exit_code == 0

        result = invoke(runner, workdir, "ready", "--json")

        assert json.loads(result.output) == ["write-parser"]

    def test_claim_done_flow(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "A", "--id", "a")
        invoke(runner, workdir, "add", "B", "--id", "b", "-b", "a")

        assert invoke(runner, workdir, "claim", "a", "--actor", "me").exit_code == 0
        assert invoke(runner, workdir, "done", "a").exit_code == 0

        result = invoke(runner, workdir, "ready", "--json")
        assert json.loads(result.output) == ["b"]

    def test_loop_command(self, runner: CliRunner, workdir: Path) -> None:
        """Test loop edges fire when the source completes."""
        invoke(runner, workdir, "add", "Write", "--id", "write")
        invoke(runner, workdir, "add", "Review", "--id", "review", "-b", "write")
        result = invoke(runner, workdir, "loop", "review", "write", "-n", "2", "--guard", "iter<2", "--delay", "1s")
        assert result.exit_code == 0, result.output

        for task_id in ("write", "review"):
            invoke(runner, workdir, "claim", task_id, "--actor", "me")
            result = invoke(runner, workdir, "done", task_id)

        assert "re-opened write" in result.output
        graph = Workspace(workdir).graph_store().load()
        assert graph.require("write").status is TaskStatus.OPEN
        assert graph.require("write").loop_iteration == 1

    def test_loop_bad_guard(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "A", "--id", "a")
        result = invoke(runner, workdir, "loop", "a", "a", "-n", "1", "--guard", "sometimes")
        assert result.exit_code == 1
        assert "Invalid guard" in result.output

    def test_loop_requires_max_iterations(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "A", "--id", "a")
        assert invoke(runner, workdir, "loop", "a", "a").exit_code == 2

    def test_cycle_rejected(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "A", "--id", "a")
        invoke(runner, workdir, "add", "B", "--id", "b", "-b", "a")
        result = invoke(runner, workdir, "link", "a", "b")
        assert result.exit_code == 1
        assert "cycle" in result.output

    def test_fail_retry_abandon(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "A", "--id", "a", "--max-retries", "2")
        invoke(runner, workdir, "claim", "a", "--actor", "me")
        assert invoke(runner, workdir, "fail", "a", "--reason", "flaky").exit_code == 0
        assert "1 retries left" in invoke(runner, workdir, "retry", "a").output
        assert invoke(runner, workdir, "abandon", "a").exit_code == 0
        assert invoke(runner, workdir, "claim", "a").exit_code == 1

    def test_list_and_show(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "Alpha", "--id", "a", "-d", "first")
        listed = json.loads(invoke(runner, workdir, "list", "--json", "--status", "open").output)
        assert [t["id"] for t in listed] == ["a"]

        result = invoke(runner, workdir, "show", "a")
        assert "Alpha" in result.output
        assert "first" in result.output

    def test_show_missing(self, runner: CliRunner, workdir: Path) -> None:
        result = invoke(runner, workdir, "show", "ghost")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_check(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "A", "--id", "a")
        assert invoke(runner, workdir, "check").exit_code == 0
        Workspace(workdir).graph_path.write_text('{"id": "a", "blocked_by": ["ghost"]}\n')
        result = invoke(runner, workdir, "check")
        assert result.exit_code == 1
        assert "ghost" in result.output


class TestAgentCommands:
    """Tests for agent commands without a daemon."""

    def test_agents_empty(self, runner: CliRunner, workdir: Path) -> None:
        result = invoke(runner, workdir, "agents")
        assert result.exit_code == 0
        assert "No agents" in result.output

    def test_spawn_needs_daemon(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "A", "--id", "a")
        with patch("taskloom.commands.agents.query_daemon", side_effect=NotRunningError("No daemon socket")):
            result = invoke(runner, workdir, "spawn", "a")
        assert result.exit_code == 1
        assert "No daemon socket" in result.output

    def test_kill_falls_back_to_direct(self, runner: CliRunner, workdir: Path) -> None:
        """Test kill works on the registry directly when no daemon answers."""
        invoke(runner, workdir, "add", "A", "--id", "a")
        workspace = Workspace(workdir)
        with workspace.graph_store().update() as graph, workspace.registry_store().update() as registry:
            registry.register(registry.reserve_id(), 999999, "a", "shell")
            graph.claim("a", "agent-1")

        with patch("taskloom.commands.agents.query_daemon", side_effect=NotRunningError("down")):
            result = invoke(runner, workdir, "kill", "agent-1")

        assert result.exit_code == 0, result.output
        assert "released a" in result.output
        assert workspace.graph_store().load().require("a").status is TaskStatus.OPEN

    def test_kill_needs_target(self, runner: CliRunner, workdir: Path) -> None:
        assert invoke(runner, workdir, "kill").exit_code == 1

    def test_dead_agents_cleanup(self, runner: CliRunner, workdir: Path) -> None:
        invoke(runner, workdir, "add", "A", "--id", "a")
        workspace = Workspace(workdir)
        with workspace.graph_store().update() as graph, workspace.registry_store().update() as registry:
            registry.register(registry.reserve_id(), 999999, "a", "shell")
            graph.claim("a", "agent-1")

        listing = invoke(runner, workdir, "dead-agents")
        assert "agent-1" in listing.output
        assert "process_exited" in listing.output

        result = invoke(runner, workdir, "dead-agents", "--cleanup", "--prune")
        assert result.exit_code == 0, result.output
        assert "reclaimed a" in result.output
        assert workspace.registry_store().load().agents == {}
        assert workspace.graph_store().load().require("a").status is TaskStatus.OPEN


class TestServiceCommands:
    """Tests for service commands without a daemon."""

    def test_status_not_running(self, runner: CliRunner, workdir: Path) -> None:
        with patch("taskloom.commands.service.query_daemon", side_effect=NotRunningError("down")):
            result = invoke(runner, workdir, "service", "status", "--json")
        assert json.loads(result.output)["running"] is False

    def test_stop_not_running(self, runner: CliRunner, workdir: Path) -> None:
        with patch("taskloom.daemon.query_daemon", side_effect=NotRunningError("down")):
            result = invoke(runner, workdir, "service", "stop")
        assert result.exit_code == 0
        assert "not running" in result.output

    def test_reconfigure_bad_setting(self, runner: CliRunner, workdir: Path) -> None:
        result = invoke(runner, workdir, "service", "reconfigure", "max_agents")
        assert result.exit_code == 1
        assert "section.key=value" in result.output

    def test_foreground_tick(self, runner: CliRunner, workdir: Path) -> None:
        """Test a one-off tick spawns real agents for ready tasks."""
        invoke(runner, workdir, "add", "A", "--id", "a", "--exec", "true")
        with patch("taskloom.commands.service.is_running", return_value=False):
            result = invoke(runner, workdir, "service", "tick", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [d["task_id"] for d in data["dispatched"]] == ["a"]


class TestParseSettings:
    """Tests for reconfigure setting parsing."""

    def test_nested_values(self) -> None:
        partial = parse_settings(("coordinator.max_agents=2", "gating.auto_assign=true", "coordinator.model=m1"))
        assert partial == {"coordinator": {"max_agents": 2, "model": "m1"}, "gating": {"auto_assign": True}}
