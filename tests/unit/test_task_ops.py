"""Tests for task mutation operations."""

from unittest.mock import patch

import pytest

from taskloom import task_ops
from taskloom.constants import AgentStatus, TaskStatus
from taskloom.exceptions import CycleError, DuplicateTaskError, InvalidTransitionError, NotRunningError
from taskloom.models import LoopEdge, LoopGuard
from taskloom.protocol import Response
from taskloom.workspace import Workspace


class TestSlugs:
    """Tests for id generation."""

    def test_slugify(self) -> None:
        assert task_ops.slugify("Write the Parser!") == "write-the-parser"
        assert task_ops.slugify("???") == "task"

    def test_unique_id(self, workspace: Workspace) -> None:
        task_ops.add_task(workspace, "Build")
        task_ops.add_task(workspace, "Build")
        graph = workspace.graph_store().load()
        assert graph.task_ids == ["build", "build-2"]


class TestAddTask:
    """Tests for add_task and edge operations."""

    def test_add_with_blockers_and_loop(self, workspace: Workspace) -> None:
        """Test a task added with blockers and a loop edge persists both."""
        task_ops.add_task(workspace, "Write", task_id="write", exec_cmd="make")
        task_ops.add_task(
            workspace,
            "Review",
            task_id="review",
            blocked_by=["write"],
            loop_edges=[LoopEdge(target="write", max_iterations=3)],
        )

        graph = workspace.graph_store().load()
        assert graph.require("write").blocks == ["review"]
        assert graph.require("write").exec == "make"
        assert graph.require("review").loop_edges[0].target == "write"
        assert graph.require("review").log[0].message == "Created"

    def test_duplicate_id(self, workspace: Workspace) -> None:
        task_ops.add_task(workspace, "A", task_id="a")
        with pytest.raises(DuplicateTaskError):
            task_ops.add_task(workspace, "A again", task_id="a")

    def test_cycle_leaves_file_untouched(self, workspace: Workspace) -> None:
        """Test a rejected edge does not change the stored graph."""
        task_ops.add_task(workspace, "A", task_id="a")
        task_ops.add_task(workspace, "B", task_id="b", blocked_by=["a"])
        before = workspace.graph_path.read_text()

        with pytest.raises(CycleError):
            task_ops.add_dependency(workspace, "a", "b")

        assert workspace.graph_path.read_text() == before

    def test_remove_dependency(self, workspace: Workspace) -> None:
        task_ops.add_task(workspace, "A", task_id="a")
        task_ops.add_task(workspace, "B", task_id="b", blocked_by=["a"])
        task_ops.remove_dependency(workspace, "b", "a")
        assert workspace.graph_store().load().require("b").blocked_by == []

    def test_add_loop(self, workspace: Workspace) -> None:
        task_ops.add_task(workspace, "A", task_id="a")
        task_ops.add_task(workspace, "B", task_id="b", blocked_by=["a"])
        guard = LoopGuard.iteration_less_than(2)
        task_ops.add_loop(workspace, "b", "a", 2, guard=guard, delay="10s")
        edge = workspace.graph_store().load().require("b").loop_edges[0]
        assert edge.guard == guard
        assert edge.delay == "10s"

    def test_mutation_notifies_daemon(self, workspace: Workspace) -> None:
        """Test mutations send a best-effort graph-changed wake-up."""
        with patch("taskloom.task_ops.notify_graph_changed") as notify:
            task_ops.add_task(workspace, "A", task_id="a")
        notify.assert_called_once_with(workspace.socket_path(workspace.load_config()))


class TestTransitions:
    """Tests for status operations and their agent bookkeeping."""

    @pytest.fixture
    def running(self, workspace: Workspace) -> Workspace:
        """Workspace with task 'a' claimed by a registered agent-1."""
        task_ops.add_task(workspace, "A", task_id="a")
        with workspace.registry_store().update() as registry:
            registry.register(registry.reserve_id(), 4242, "a", "shell")
        task_ops.claim(workspace, "a", "agent-1")
        return workspace

    def test_done_finishes_agent(self, running: Workspace) -> None:
        assert task_ops.done(running, "a") == []
        assert running.graph_store().load().require("a").status is TaskStatus.DONE
        assert running.registry_store().load().require("agent-1").status is AgentStatus.DONE

    def test_done_fires_loops(self, running: Workspace) -> None:
        with running.graph_store().update() as graph:
            graph.add_loop_edge("a", LoopEdge(target="a", max_iterations=1))
        assert task_ops.done(running, "a") == ["a"]
        assert running.graph_store().load().require("a").status is TaskStatus.OPEN

    def test_fail_marks_agent_failed(self, running: Workspace) -> None:
        task = task_ops.fail(running, "a", reason="tests red")
        assert task.failure_reason == "tests red"
        assert running.registry_store().load().require("agent-1").status is AgentStatus.FAILED

    def test_retry_then_abandon(self, running: Workspace) -> None:
        task_ops.fail(running, "a")
        assert task_ops.retry(running, "a").status is TaskStatus.OPEN
        assert task_ops.abandon(running, "a", reason="obsolete").status is TaskStatus.ABANDONED

    def test_unclaim(self, running: Workspace) -> None:
        assert task_ops.unclaim(running, "a").assigned is None

    def test_done_without_claim_rejected(self, workspace: Workspace) -> None:
        task_ops.add_task(workspace, "A", task_id="a")
        with pytest.raises(InvalidTransitionError):
            task_ops.done(workspace, "a")


class TestHeartbeat:
    """Tests for heartbeat routing."""

    @pytest.fixture
    def agent(self, workspace: Workspace) -> str:
        with workspace.registry_store().update() as registry:
            record = registry.register(registry.reserve_id(), 4242, "a", "shell")
            record.last_heartbeat = "2020-01-01T00:00:00+00:00"
        return record.id

    def test_direct_when_no_daemon(self, workspace: Workspace, agent: str) -> None:
        with patch("taskloom.task_ops.send_request", side_effect=NotRunningError("down")):
            stamp = task_ops.heartbeat(workspace, agent)
        assert stamp != "2020-01-01T00:00:00+00:00"
        assert workspace.registry_store().load().require(agent).last_heartbeat == stamp

    def test_through_daemon(self, workspace: Workspace, agent: str) -> None:
        response = Response.success(agent_id=agent, last_heartbeat="2026-01-01T00:00:00+00:00")
        with patch("taskloom.task_ops.send_request", return_value=response):
            assert task_ops.heartbeat(workspace, agent) == "2026-01-01T00:00:00+00:00"
        assert workspace.registry_store().load().require(agent).last_heartbeat == "2020-01-01T00:00:00+00:00"
