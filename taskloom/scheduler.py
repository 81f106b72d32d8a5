"""Ready-set computation.

A task is ready when it is Open, unassigned, every direct blocker exists and
is Done, and any ``not_before``/``ready_after`` time has passed. Only direct
``blocked_by`` lists are consulted, so a pass is linear in tasks plus edges.
Loop edges are never read here.
"""

from __future__ import annotations

from datetime import datetime

from taskloom.constants import TaskStatus
from taskloom.graph import TaskGraph
from taskloom.logging import get_logger
from taskloom.models import Task, parse_timestamp, utc_now

logger = get_logger("scheduler")


def is_time_ready(task: Task, now: datetime | None = None) -> bool:
    """True when neither ``not_before`` nor ``ready_after`` lies in the future.

    Unparseable timestamps do not hold a task back.
    """
    now = now or utc_now()
    for value in (task.not_before, task.ready_after):
        ts = parse_timestamp(value)
        if ts is not None and ts > now:
            return False
    return True


def unmet_blockers(graph: TaskGraph, task: Task) -> list[str]:
    """Direct blockers of ``task`` that are not Done, including unknown ids."""
    unmet = []
    for blocker_id in task.blocked_by:
        blocker = graph.get(blocker_id)
        if blocker is None or blocker.status is not TaskStatus.DONE:
            unmet.append(blocker_id)
    return unmet


def is_ready(graph: TaskGraph, task: Task, now: datetime | None = None) -> bool:
    if task.status is not TaskStatus.OPEN or task.assigned is not None:
        return False
    for blocker_id in task.blocked_by:
        blocker = graph.get(blocker_id)
        if blocker is None:
            logger.warning(
                f"Task '{task.id}' is blocked by unknown task '{blocker_id}'; keeping it blocked",
                extra={"task_id": task.id},
            )
            return False
        if blocker.status is not TaskStatus.DONE:
            return False
    return is_time_ready(task, now)


def compute_ready(graph: TaskGraph, now: datetime | None = None) -> list[str]:
    """Ids of dispatchable tasks, ordered by task id."""
    now = now or utc_now()
    return sorted(task.id for task in graph if is_ready(graph, task, now))


def dependents(graph: TaskGraph, task_id: str) -> list[str]:
    """Every task transitively blocked by ``task_id``, in graph order."""
    seen: set[str] = set()
    stack = [task_id]
    while stack:
        current = graph.get(stack.pop())
        if current is None:
            continue
        for nxt in current.blocks:
            if nxt not in seen:
                seen.add(nxt)
                stack.append(nxt)
    return [tid for tid in graph.task_ids if tid in seen]


def count_by_status(graph: TaskGraph) -> dict[str, int]:
    """Task counts keyed by status value; every status is present."""
    counts = {status.value: 0 for status in TaskStatus}
    for task in graph:
        counts[task.status.value] += 1
    return counts
