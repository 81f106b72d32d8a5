"""In-memory task graph with blocking edges, loop edges and the status state machine.

Blocking edges (``blocked_by`` and its inverse ``blocks``) form the acyclic
ordering used by readiness. Loop edges are stored on the source task and are
only consulted by :mod:`taskloom.loops` when that task completes.
"""

from __future__ import annotations

from collections.abc import Iterator

from taskloom.constants import TaskStatus
from taskloom.exceptions import (
    CycleError,
    DuplicateTaskError,
    InvalidTransitionError,
    LoopEdgeError,
    TaskError,
    TaskNotFoundError,
)
from taskloom.logging import get_logger
from taskloom.loops import fire_loop_edges
from taskloom.models import LoopEdge, Task, utc_now_iso

logger = get_logger("graph")

# Direct external transitions. Done -> Open happens only through loop firing.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.ABANDONED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.OPEN, TaskStatus.ABANDONED}
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.OPEN, TaskStatus.ABANDONED}),
    TaskStatus.DONE: frozenset(),
    TaskStatus.ABANDONED: frozenset(),
}


def check_transition(task: Task, to_status: TaskStatus) -> None:
    """Raise InvalidTransitionError unless ``task`` may move to ``to_status``."""
    if to_status not in ALLOWED_TRANSITIONS[task.status]:
        raise InvalidTransitionError(
            f"Task '{task.id}' cannot move from {task.status.value} to {to_status.value}",
            task.id,
            task.status.value,
            to_status.value,
        )


class TaskGraph:
    """Ordered collection of tasks keyed by id.

    All structural edits go through this class so that ``blocked_by`` and
    ``blocks`` stay mutual inverses.
    """

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks or []:
            if task.id in self._tasks:
                raise DuplicateTaskError(f"Duplicate task id '{task.id}'", task.id)
            self._tasks[task.id] = task

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    @property
    def task_ids(self) -> list[str]:
        return list(self._tasks)

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        """Return the task or raise TaskNotFoundError."""
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found", task_id)
        return task

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def add_task(self, task: Task) -> Task:
        """Insert a new task, wiring inverse edges to existing tasks.

        Blockers that do not exist yet are kept as dangling references; they
        keep the task blocked until the blocker is added.

        Raises:
            DuplicateTaskError: If the id is taken
            CycleError: If the task's blocking edges would close a cycle
        """
        if task.id in self._tasks:
            raise DuplicateTaskError(f"Task '{task.id}' already exists", task.id)
        if task.created_at is None:
            task.created_at = utc_now_iso()

        blocked_by = _dedupe(task.blocked_by)
        blocks = _dedupe(task.blocks)
        if task.id in blocked_by or task.id in blocks:
            raise CycleError(f"Task '{task.id}' cannot block itself", task.id, [task.id, task.id])
        task.blocked_by = []
        task.blocks = []
        self._tasks[task.id] = task

        try:
            for blocker_id in blocked_by:
                self.add_dependency(task.id, blocker_id)
            for dependent_id in blocks:
                self.add_dependency(dependent_id, task.id)
        except TaskError:
            self.remove_task(task.id)
            raise

        # Existing tasks that already named this id as a blocker
        for other in self._tasks.values():
            if task.id in other.blocked_by and other.id not in task.blocks:
                task.blocks.append(other.id)
        return task

    def add_dependency(self, task_id: str, blocker_id: str) -> None:
        """Make ``task_id`` blocked by ``blocker_id``.

        The blocker may be missing from the graph (dangling); the inverse edge
        is then completed when it is added.

        Raises:
            TaskNotFoundError: If ``task_id`` does not exist
            CycleError: If the edge would close a blocking cycle
        """
        task = self.require(task_id)
        if blocker_id == task_id:
            raise CycleError(f"Task '{task_id}' cannot block itself", task_id, [task_id, task_id])
        if blocker_id in task.blocked_by:
            return

        path = self._blocking_path(blocker_id, task_id)
        if path is not None:
            cycle = [task_id, *path]
            raise CycleError(
                f"Edge {blocker_id} -> {task_id} would create a cycle: {' -> '.join(cycle)}",
                task_id,
                cycle,
            )

        task.blocked_by.append(blocker_id)
        blocker = self._tasks.get(blocker_id)
        if blocker is None:
            logger.warning(f"Task '{task_id}' is blocked by unknown task '{blocker_id}'", extra={"task_id": task_id})
        elif task_id not in blocker.blocks:
            blocker.blocks.append(task_id)

    def remove_dependency(self, task_id: str, blocker_id: str) -> None:
        task = self.require(task_id)
        if blocker_id in task.blocked_by:
            task.blocked_by.remove(blocker_id)
        blocker = self._tasks.get(blocker_id)
        if blocker is not None and task_id in blocker.blocks:
            blocker.blocks.remove(task_id)

    def remove_task(self, task_id: str) -> Task:
        """Delete a task and strip every reference to it."""
        task = self.require(task_id)
        del self._tasks[task_id]
        for other in self._tasks.values():
            if task_id in other.blocked_by:
                other.blocked_by.remove(task_id)
            if task_id in other.blocks:
                other.blocks.remove(task_id)
            other.loop_edges = [e for e in other.loop_edges if e.target != task_id]
        return task

    def add_loop_edge(self, source_id: str, edge: LoopEdge) -> None:
        """Attach a loop edge to ``source_id``.

        Loop edges are exempt from cycle validation.

        Raises:
            TaskNotFoundError: If the source does not exist
            LoopEdgeError: If the target does not exist or the edge duplicates one
        """
        source = self.require(source_id)
        if edge.target not in self._tasks:
            raise LoopEdgeError(f"Loop target '{edge.target}' not found", source_id)
        if any(existing.target == edge.target for existing in source.loop_edges):
            raise LoopEdgeError(f"Task '{source_id}' already loops to '{edge.target}'", source_id)
        source.loop_edges.append(edge)

    def _blocking_path(self, start: str, goal: str) -> list[str] | None:
        """Path from ``start`` to ``goal`` following ``blocked_by`` edges, if any."""
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        seen: set[str] = set()
        while stack:
            node, path = stack.pop()
            if node == goal:
                return path
            if node in seen:
                continue
            seen.add(node)
            current = self._tasks.get(node)
            if current is None:
                continue
            for nxt in current.blocked_by:
                if nxt not in seen:
                    stack.append((nxt, [*path, nxt]))
        return None

    # ------------------------------------------------------------------
    # Status state machine
    # ------------------------------------------------------------------

    def claim(self, task_id: str, agent_id: str, actor: str | None = None) -> Task:
        """Open -> InProgress with ``agent_id`` as the assignee.

        Raises:
            InvalidTransitionError: If the task is not Open or already assigned
        """
        task = self.require(task_id)
        check_transition(task, TaskStatus.IN_PROGRESS)
        if task.assigned is not None:
            raise InvalidTransitionError(
                f"Task '{task_id}' is already assigned to '{task.assigned}'",
                task_id,
                task.status.value,
                TaskStatus.IN_PROGRESS.value,
            )
        task.status = TaskStatus.IN_PROGRESS
        task.assigned = agent_id
        task.started_at = utc_now_iso()
        task.add_log(f"Claimed by {agent_id}", actor=actor or agent_id)
        return task

    def unclaim(self, task_id: str, reason: str | None = None, actor: str | None = None) -> Task:
        """InProgress -> Open, clearing the assignment."""
        task = self.require(task_id)
        check_transition(task, TaskStatus.OPEN)
        if task.status is not TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Task '{task_id}' is not in progress",
                task_id,
                task.status.value,
                TaskStatus.OPEN.value,
            )
        previous = task.assigned
        task.status = TaskStatus.OPEN
        task.assigned = None
        task.started_at = None
        message = f"Released by {previous}" if previous else "Released"
        task.add_log(f"{message}: {reason}" if reason else message, actor=actor)
        return task

    def complete(self, task_id: str, actor: str | None = None) -> list[str]:
        """InProgress -> Done, then fire the task's loop edges.

        Returns:
            Ids of tasks reopened by loop firing
        """
        task = self.require(task_id)
        check_transition(task, TaskStatus.DONE)
        task.status = TaskStatus.DONE
        task.completed_at = utc_now_iso()
        task.add_log("Marked done", actor=actor or task.assigned)
        return fire_loop_edges(self, task_id)

    def fail(self, task_id: str, reason: str | None = None, actor: str | None = None) -> Task:
        """InProgress -> Failed, counting the failure."""
        task = self.require(task_id)
        check_transition(task, TaskStatus.FAILED)
        task.status = TaskStatus.FAILED
        task.retry_count += 1
        task.failure_reason = reason
        task.completed_at = utc_now_iso()
        task.add_log(f"Failed: {reason}" if reason else "Failed", actor=actor or task.assigned)
        return task

    def retry(self, task_id: str, actor: str | None = None) -> Task:
        """Failed -> Open, unless the retry budget is spent.

        ``retry_count`` is kept for history.
        """
        task = self.require(task_id)
        if task.status is not TaskStatus.FAILED:
            raise InvalidTransitionError(
                f"Task '{task_id}' is {task.status.value}, only failed tasks can be retried",
                task_id,
                task.status.value,
                TaskStatus.OPEN.value,
            )
        if task.max_retries is not None and task.retry_count >= task.max_retries:
            raise TaskError(
                f"Task '{task_id}' has reached max retries ({task.retry_count}/{task.max_retries})",
                task_id,
                {"retry_count": task.retry_count, "max_retries": task.max_retries},
            )
        task.status = TaskStatus.OPEN
        task.assigned = None
        task.started_at = None
        task.completed_at = None
        task.failure_reason = None
        task.add_log(f"Reset for retry (attempt #{task.retry_count + 1})", actor=actor)
        return task

    def abandon(self, task_id: str, reason: str | None = None, actor: str | None = None) -> Task:
        """Any non-terminal status -> Abandoned (final)."""
        task = self.require(task_id)
        check_transition(task, TaskStatus.ABANDONED)
        task.status = TaskStatus.ABANDONED
        task.assigned = None
        task.failure_reason = reason
        task.add_log(f"Abandoned: {reason}" if reason else "Abandoned", actor=actor)
        return task

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def find_blocking_cycle(self) -> list[str] | None:
        """Return one blocking-edge cycle if any exists. Loop edges are ignored."""
        white, gray, black = 0, 1, 2
        color = dict.fromkeys(self._tasks, white)

        for root in self._tasks:
            if color[root] != white:
                continue
            stack: list[tuple[str, Iterator[str]]] = [(root, iter(self._tasks[root].blocked_by))]
            path = [root]
            color[root] = gray
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    color[node] = black
                    stack.pop()
                    path.pop()
                    continue
                if child not in self._tasks:
                    continue
                if color[child] == gray:
                    return [*path[path.index(child):], child]
                if color[child] == white:
                    color[child] = gray
                    path.append(child)
                    stack.append((child, iter(self._tasks[child].blocked_by)))
        return None

    def validate(self) -> list[str]:
        """Structural problems: dangling references, broken inverses, cycles."""
        problems: list[str] = []
        for task in self._tasks.values():
            for blocker_id in task.blocked_by:
                blocker = self._tasks.get(blocker_id)
                if blocker is None:
                    problems.append(f"Task '{task.id}' is blocked by unknown task '{blocker_id}'")
                elif task.id not in blocker.blocks:
                    problems.append(f"Task '{blocker_id}' is missing inverse edge to '{task.id}'")
            for dependent_id in task.blocks:
                dependent = self._tasks.get(dependent_id)
                if dependent is None:
                    problems.append(f"Task '{task.id}' blocks unknown task '{dependent_id}'")
                elif task.id not in dependent.blocked_by:
                    problems.append(f"Task '{dependent_id}' is missing inverse edge to '{task.id}'")
            for edge in task.loop_edges:
                if edge.target not in self._tasks:
                    problems.append(f"Task '{task.id}' loops to unknown task '{edge.target}'")
                if edge.guard is not None and edge.guard.task and edge.guard.task not in self._tasks:
                    problems.append(f"Loop guard on '{task.id}' references unknown task '{edge.guard.task}'")
            if task.status is TaskStatus.IN_PROGRESS and task.assigned is None:
                problems.append(f"Task '{task.id}' is in progress without an assignee")
        cycle = self.find_blocking_cycle()
        if cycle:
            problems.append(f"Blocking cycle: {' -> '.join(cycle)}")
        return problems


def _dedupe(ids: list[str]) -> list[str]:
    return list(dict.fromkeys(ids))
