"""Tests for loop edge firing."""

from datetime import UTC, datetime, timedelta

import pytest

from taskloom.constants import TaskStatus
from taskloom.graph import TaskGraph
from taskloom.loops import cycle_members, evaluate_guard, fire_loop_edges, parse_delay
from taskloom.models import LoopEdge, LoopGuard
from tests.helpers.task_builders import make_graph, make_task


def _run(graph: TaskGraph, task_id: str) -> list[str]:
    graph.claim(task_id, "agent-x")
    return graph.complete(task_id)


@pytest.fixture
def pipeline() -> TaskGraph:
    """write -> review -> publish, with review looping back to write."""
    graph = make_graph(make_task("write"), make_task("review", "write"), make_task("publish", "review"))
    graph.add_loop_edge("review", LoopEdge(target="write", max_iterations=2))
    return graph


class TestParseDelay:
    """Tests for parse_delay."""

    @pytest.mark.parametrize(
        ("text", "seconds"),
        [("30s", 30), ("5m", 300), ("2h", 7200), ("1d", 86400), (" 10 s ", 10)],
    )
    def test_units(self, text: str, seconds: int) -> None:
        assert parse_delay(text) == timedelta(seconds=seconds)

    @pytest.mark.parametrize("text", ["", "5", "m5", "1w", "-3s"])
    def test_invalid(self, text: str) -> None:
        with pytest.raises(ValueError):
            parse_delay(text)


class TestEvaluateGuard:
    """Tests for guard evaluation."""

    def test_no_guard_fires(self) -> None:
        graph = make_graph(make_task("a"))
        assert evaluate_guard(graph, LoopEdge(target="a", max_iterations=1), graph.require("a"))

    def test_task_status_guard(self) -> None:
        graph = make_graph(make_task("a"), make_task("check"))
        edge = LoopEdge(
            target="a", max_iterations=3, guard=LoopGuard.task_status("check", TaskStatus.FAILED)
        )
        assert not evaluate_guard(graph, edge, graph.require("a"))
        graph.claim("check", "agent-1")
        graph.fail("check")
        assert evaluate_guard(graph, edge, graph.require("a"))

    def test_task_status_guard_unknown_task(self) -> None:
        graph = make_graph(make_task("a"))
        edge = LoopEdge(
            target="a", max_iterations=3, guard=LoopGuard.task_status("ghost", TaskStatus.DONE)
        )
        assert not evaluate_guard(graph, edge, graph.require("a"))

    def test_iteration_less_than(self) -> None:
        graph = make_graph(make_task("a", loop_iteration=1))
        edge = LoopEdge(target="a", max_iterations=5, guard=LoopGuard.iteration_less_than(2))
        assert evaluate_guard(graph, edge, graph.require("a"))
        graph.require("a").loop_iteration = 2
        assert not evaluate_guard(graph, edge, graph.require("a"))


class TestCycleMembers:
    """Tests for cycle_members."""

    def test_members_between_target_and_source(self) -> None:
        graph = make_graph(
            make_task("a"), make_task("b", "a"), make_task("c", "b"), make_task("side", "a")
        )
        assert cycle_members(graph, "a", "c") == ["b"]

    def test_adjacent_tasks_have_no_members(self, pipeline: TaskGraph) -> None:
        assert cycle_members(pipeline, "write", "review") == []


class TestFireLoopEdges:
    """Tests for fire_loop_edges."""

    def test_reopens_target_and_source(self, pipeline: TaskGraph) -> None:
        _run(pipeline, "write")
        reopened = _run(pipeline, "review")

        assert reopened == ["write", "review"]
        write = pipeline.require("write")
        assert write.status is TaskStatus.OPEN
        assert write.assigned is None
        assert write.loop_iteration == 1
        assert "Re-activated by loop from review (iteration 1/2)" in write.log[-1].message
        assert pipeline.require("review").status is TaskStatus.OPEN
        assert pipeline.require("publish").status is TaskStatus.OPEN

    def test_iterations_are_bounded(self, pipeline: TaskGraph) -> None:
        for expected in (1, 2):
            _run(pipeline, "write")
            assert _run(pipeline, "review") == ["write", "review"]
            assert pipeline.require("write").loop_iteration == expected

        _run(pipeline, "write")
        assert _run(pipeline, "review") == []
        assert pipeline.require("review").status is TaskStatus.DONE
        assert pipeline.require("write").loop_iteration == 2

    def test_intermediate_done_tasks_reopened(self) -> None:
        graph = make_graph(make_task("a"), make_task("b", "a"), make_task("c", "b"))
        graph.add_loop_edge("c", LoopEdge(target="a", max_iterations=3))
        for task_id in ("a", "b"):
            _run(graph, task_id)

        assert _run(graph, "c") == ["a", "b", "c"]
        assert all(graph.require(t).status is TaskStatus.OPEN for t in ("a", "b", "c"))
        assert graph.require("b").loop_iteration == 1

    def test_guard_blocks_firing(self, pipeline: TaskGraph) -> None:
        pipeline.require("review").loop_edges[0].guard = LoopGuard.iteration_less_than(0)
        _run(pipeline, "write")
        assert _run(pipeline, "review") == []
        assert pipeline.require("write").status is TaskStatus.DONE

    def test_delay_sets_ready_after(self, pipeline: TaskGraph) -> None:
        pipeline.require("review").loop_edges[0].delay = "5m"
        now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        for task_id in ("write", "review"):
            pipeline.claim(task_id, "agent-1")
            pipeline.require(task_id).status = TaskStatus.DONE

        fire_loop_edges(pipeline, "review", now=now)

        assert pipeline.require("write").ready_after == (now + timedelta(minutes=5)).isoformat()

    @pytest.mark.parametrize("status", [TaskStatus.IN_PROGRESS, TaskStatus.ABANDONED])
    def test_target_in_progress_or_abandoned_skipped(self, status: TaskStatus) -> None:
        graph = make_graph(make_task("a"), make_task("b"))
        graph.add_loop_edge("b", LoopEdge(target="a", max_iterations=3))
        graph.require("a").status = status
        assert _run(graph, "b") == []
        assert graph.require("a").status is status
        assert graph.require("a").loop_iteration == 0

    def test_self_loop(self) -> None:
        graph = make_graph(make_task("poll"))
        graph.add_loop_edge("poll", LoopEdge(target="poll", max_iterations=1))
        assert _run(graph, "poll") == ["poll"]
        assert _run(graph, "poll") == []

    def test_unknown_source(self) -> None:
        assert fire_loop_edges(TaskGraph(), "ghost") == []
