"""Bounded re-activation of completed work through loop edges.

A loop edge lives on its source task. When the source reaches Done, each edge
is checked once: if its guard holds and the target has iterations left, the
target is reopened. Tasks that depend on the target drop out of the ready set
through the ordinary readiness predicate; nothing downstream is mutated here.

To let the cycle actually run again, Done tasks on the blocking path from the
target back to the source (and the source itself) are reopened with the same
iteration number.
"""

from __future__ import annotations

import re
from collections import deque
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from taskloom.constants import TaskStatus
from taskloom.logging import get_logger
from taskloom.models import (
    GUARD_ALWAYS,
    GUARD_ITERATION_LESS_THAN,
    GUARD_TASK_STATUS,
    LoopEdge,
    Task,
    utc_now,
)

if TYPE_CHECKING:
    from taskloom.graph import TaskGraph

logger = get_logger("loops")

_DELAY_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_DELAY_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_delay(text: str) -> timedelta:
    """Parse a delay such as ``30s``, ``5m``, ``1h`` or ``1d``.

    Raises:
        ValueError: If the text is not a number followed by s/m/h/d
    """
    match = _DELAY_PATTERN.match(text or "")
    if not match:
        raise ValueError(f"Invalid delay '{text}': expected <number><s|m|h|d>")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DELAY_UNITS[unit])


def evaluate_guard(graph: TaskGraph, edge: LoopEdge, target: Task) -> bool:
    """Check an edge's guard against the current graph.

    A missing guard means "always". A guard naming a task that does not exist
    is logged and treated as not satisfied.
    """
    guard = edge.guard
    if guard is None or guard.kind == GUARD_ALWAYS:
        return True
    if guard.kind == GUARD_ITERATION_LESS_THAN:
        return target.loop_iteration < (guard.value or 0)
    if guard.kind == GUARD_TASK_STATUS:
        referenced = graph.get(guard.task or "")
        if referenced is None:
            logger.warning(
                f"Loop guard references unknown task '{guard.task}'; treating as unsatisfied",
                extra={"task_id": target.id},
            )
            return False
        return referenced.status == guard.status
    return False


def cycle_members(graph: TaskGraph, target_id: str, source_id: str) -> list[str]:
    """Tasks strictly between ``target`` and ``source`` on blocking paths.

    Computed as the intersection of everything downstream of the target
    (following ``blocks``) and everything upstream of the source (following
    ``blocked_by``), in graph order.
    """
    downstream = _reachable(graph, target_id, forward=True)
    upstream = _reachable(graph, source_id, forward=False)
    between = (downstream & upstream) - {target_id, source_id}
    return [task_id for task_id in graph.task_ids if task_id in between]


def fire_loop_edges(graph: TaskGraph, source_id: str, now: datetime | None = None) -> list[str]:
    """Evaluate the loop edges of a task that just reached Done.

    Args:
        graph: Graph to mutate in place
        source_id: Task that completed
        now: Clock override for delay computation

    Returns:
        Ids of every task reopened, target first
    """
    source = graph.get(source_id)
    if source is None or not source.loop_edges:
        return []
    now = now or utc_now()
    reopened: list[str] = []

    for edge in source.loop_edges:
        target = graph.get(edge.target)
        if target is None:
            logger.warning(
                f"Loop edge from '{source_id}' points at unknown task '{edge.target}'",
                extra={"task_id": source_id},
            )
            continue
        if target.status in (TaskStatus.IN_PROGRESS, TaskStatus.ABANDONED):
            logger.info(
                f"Loop target '{target.id}' is {target.status.value}; not re-activating",
                extra={"task_id": source_id},
            )
            continue
        if not evaluate_guard(graph, edge, target):
            continue
        if target.loop_iteration >= edge.max_iterations:
            logger.info(
                f"Loop {source_id} -> {target.id} exhausted ({target.loop_iteration}/{edge.max_iterations})",
                extra={"task_id": source_id},
            )
            continue

        iteration = target.loop_iteration + 1
        _reopen(target, iteration)
        target.add_log(
            f"Re-activated by loop from {source_id} (iteration {iteration}/{edge.max_iterations})",
            actor=source_id,
        )
        if edge.delay:
            try:
                target.ready_after = (now + parse_delay(edge.delay)).isoformat()
            except ValueError as e:
                logger.warning(f"Ignoring loop delay on '{source_id}': {e}", extra={"task_id": source_id})
        reopened.append(target.id)
        logger.info(
            f"Loop {source_id} -> {target.id} fired (iteration {iteration}/{edge.max_iterations})",
            extra={"task_id": target.id},
        )

        if target.id == source_id:
            continue
        for member_id in [*cycle_members(graph, target.id, source_id), source_id]:
            member = graph.require(member_id)
            if member.status is not TaskStatus.DONE or member_id in reopened:
                continue
            _reopen(member, _bounded_iteration(member, iteration))
            member.add_log(
                f"Re-opened by loop {source_id} -> {target.id} (iteration {iteration}/{edge.max_iterations})",
                actor=source_id,
            )
            reopened.append(member_id)

    return reopened


def _reopen(task: Task, iteration: int) -> None:
    task.status = TaskStatus.OPEN
    task.assigned = None
    task.started_at = None
    task.completed_at = None
    task.loop_iteration = iteration


def _bounded_iteration(task: Task, iteration: int) -> int:
    # A task never counts past the limit of any of its own loop edges
    if not task.loop_edges:
        return iteration
    return min(iteration, min(edge.max_iterations for edge in task.loop_edges))


def _reachable(graph: TaskGraph, start: str, forward: bool) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        task = graph.get(queue.popleft())
        if task is None:
            continue
        for nxt in task.blocks if forward else task.blocked_by:
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen
