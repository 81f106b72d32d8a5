"""Assignment and evaluation gate insertion.

Both passes are split into a pure planning step that reads the graph and
returns edits, and :func:`apply_gate_insertions` which applies them. Planning
skips any gate whose id already exists, and applying re-checks, so running a
pass any number of times inserts each gate at most once.
"""

from __future__ import annotations

from dataclasses import dataclass

from taskloom.config import GatingConfig
from taskloom.constants import (
    ASSIGN_GATE_PREFIX,
    EVALUATE_GATE_PREFIX,
    GATE_TAG_ASSIGNMENT,
    GATE_TAG_EVALUATION,
    TaskStatus,
)
from taskloom.graph import TaskGraph
from taskloom.logging import get_logger
from taskloom.models import Task

logger = get_logger("gating")


@dataclass
class GateInsertion:
    """A gate task to add, and optionally the task it must block."""

    gate: Task
    blocks: str | None = None


def is_gate(task: Task) -> bool:
    return GATE_TAG_ASSIGNMENT in task.tags or GATE_TAG_EVALUATION in task.tags


def assign_gate_id(task_id: str) -> str:
    return f"{ASSIGN_GATE_PREFIX}{task_id}"


def evaluate_gate_id(task_id: str) -> str:
    return f"{EVALUATE_GATE_PREFIX}{task_id}"


def plan_assignment_gates(
    graph: TaskGraph, ready_ids: list[str], config: GatingConfig | None = None
) -> list[GateInsertion]:
    """Gate every ready, non-gate task that has no explicit agent identity.

    The gate blocks the task, so the task leaves the ready set until an
    assigner completes the gate.
    """
    config = config or GatingConfig()
    edits: list[GateInsertion] = []
    for task_id in ready_ids:
        task = graph.get(task_id)
        if task is None or is_gate(task) or task.agent:
            continue
        gate_id = assign_gate_id(task_id)
        if gate_id in graph:
            continue
        gate = Task(
            id=gate_id,
            title=f"Assign agent for: {task.title}",
            description=f"Choose an agent identity for task '{task_id}'.",
            tags=[GATE_TAG_ASSIGNMENT],
            executor=config.assigner_executor,
            metadata={"assigns": task_id},
        )
        edits.append(GateInsertion(gate=gate, blocks=task_id))
    return edits


def plan_evaluation_gates(graph: TaskGraph, config: GatingConfig | None = None) -> list[GateInsertion]:
    """Gate every Done or Failed non-gate task with an evaluation task.

    Done tasks block their evaluation gate. Failed tasks get the gate without
    an edge because they never become Done. Abandoned tasks are not evaluated.
    """
    config = config or GatingConfig()
    edits: list[GateInsertion] = []
    for task in graph:
        if task.status not in (TaskStatus.DONE, TaskStatus.FAILED) or is_gate(task):
            continue
        gate_id = evaluate_gate_id(task.id)
        if gate_id in graph:
            continue
        gate = Task(
            id=gate_id,
            title=f"Evaluate: {task.title}",
            description=f"Evaluate the outcome of task '{task.id}' ({task.status.value}).",
            blocked_by=[task.id] if task.status is TaskStatus.DONE else [],
            tags=[GATE_TAG_EVALUATION],
            executor=config.evaluator_executor,
            metadata={"evaluates": task.id},
        )
        edits.append(GateInsertion(gate=gate))
    return edits


def apply_gate_insertions(graph: TaskGraph, edits: list[GateInsertion]) -> list[str]:
    """Apply planned insertions, skipping any gate already present.

    Returns:
        Ids of gates actually inserted
    """
    inserted: list[str] = []
    for edit in edits:
        if edit.gate.id in graph:
            continue
        graph.add_task(edit.gate)
        if edit.blocks is not None:
            graph.add_dependency(edit.blocks, edit.gate.id)
            graph.require(edit.blocks).add_log(f"Gated by {edit.gate.id}", actor="coordinator")
        inserted.append(edit.gate.id)
        logger.info(f"Inserted gate '{edit.gate.id}'", extra={"task_id": edit.gate.id})
    return inserted
