"""Task mutation operations used by the CLI and by agents.

Every operation holds the graph lock for its read-modify-write (and the
registry lock after it when agent records change), then sends a best-effort
GraphChanged so a running daemon reacts without waiting for its timer.
"""

from __future__ import annotations

import re

from taskloom.client import notify_graph_changed, send_request
from taskloom.constants import AgentStatus
from taskloom.exceptions import NotRunningError, ProtocolError
from taskloom.graph import TaskGraph
from taskloom.logging import get_logger
from taskloom.models import LoopEdge, LoopGuard, Task
from taskloom.protocol import HeartbeatRequest
from taskloom.state.registry import AgentRegistry
from taskloom.workspace import Workspace

logger = get_logger("task_ops")

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(title: str, max_length: int = 40) -> str:
    slug = _SLUG_STRIP.sub("-", title.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "task"


def unique_id(graph: TaskGraph, base: str) -> str:
    if base not in graph:
        return base
    n = 2
    while f"{base}-{n}" in graph:
        n += 1
    return f"{base}-{n}"


def _notify(workspace: Workspace) -> None:
    config = workspace.load_config()
    notify_graph_changed(workspace.socket_path(config))


def add_task(
    workspace: Workspace,
    title: str,
    task_id: str | None = None,
    blocked_by: list[str] | None = None,
    description: str | None = None,
    tags: list[str] | None = None,
    skills: list[str] | None = None,
    exec_cmd: str | None = None,
    executor: str | None = None,
    model: str | None = None,
    agent: str | None = None,
    max_retries: int | None = None,
    not_before: str | None = None,
    loop_edges: list[LoopEdge] | None = None,
) -> Task:
    """Create a task. The id defaults to a slug of the title.

    Raises:
        DuplicateTaskError: If ``task_id`` is taken
        CycleError: If ``blocked_by`` would close a blocking cycle
        LoopEdgeError: If a loop edge targets an unknown task
    """
    with workspace.graph_store().update() as graph:
        task = Task(
            id=task_id or unique_id(graph, slugify(title)),
            title=title,
            description=description,
            blocked_by=list(blocked_by or []),
            tags=list(tags or []),
            skills=list(skills or []),
            exec=exec_cmd,
            executor=executor,
            model=model,
            agent=agent,
            max_retries=max_retries,
            not_before=not_before,
        )
        graph.add_task(task)
        for edge in loop_edges or []:
            graph.add_loop_edge(task.id, edge)
        task.add_log("Created")
    logger.info(f"Added task '{task.id}'", extra={"task_id": task.id})
    _notify(workspace)
    return task


def add_dependency(workspace: Workspace, task_id: str, blocker_id: str) -> None:
    with workspace.graph_store().update() as graph:
        graph.add_dependency(task_id, blocker_id)
    _notify(workspace)


def remove_dependency(workspace: Workspace, task_id: str, blocker_id: str) -> None:
    with workspace.graph_store().update() as graph:
        graph.remove_dependency(task_id, blocker_id)
    _notify(workspace)


def add_loop(
    workspace: Workspace,
    source_id: str,
    target_id: str,
    max_iterations: int,
    guard: LoopGuard | None = None,
    delay: str | None = None,
) -> LoopEdge:
    """Attach a loop edge from ``source_id`` back to ``target_id``."""
    edge = LoopEdge(target=target_id, max_iterations=max_iterations, guard=guard, delay=delay)
    with workspace.graph_store().update() as graph:
        graph.add_loop_edge(source_id, edge)
    return edge


def claim(workspace: Workspace, task_id: str, actor: str) -> Task:
    with workspace.graph_store().update() as graph:
        task = graph.claim(task_id, actor, actor=actor)
    _notify(workspace)
    return task


def unclaim(workspace: Workspace, task_id: str, reason: str | None = None) -> Task:
    with workspace.graph_store().update() as graph:
        task = graph.unclaim(task_id, reason=reason)
    _notify(workspace)
    return task


def done(workspace: Workspace, task_id: str, actor: str | None = None) -> list[str]:
    """Mark a task Done, firing its loop edges.

    Returns:
        Ids reopened by loop firing
    """
    with workspace.graph_store().update() as graph, workspace.registry_store().update() as registry:
        agent_id = graph.require(task_id).assigned
        reopened = graph.complete(task_id, actor=actor)
        _finish_agent(registry, agent_id, task_id, AgentStatus.DONE)
    _notify(workspace)
    return reopened


def fail(workspace: Workspace, task_id: str, reason: str | None = None, actor: str | None = None) -> Task:
    with workspace.graph_store().update() as graph, workspace.registry_store().update() as registry:
        task = graph.fail(task_id, reason=reason, actor=actor)
        _finish_agent(registry, task.assigned, task_id, AgentStatus.FAILED)
    _notify(workspace)
    return task


def retry(workspace: Workspace, task_id: str) -> Task:
    with workspace.graph_store().update() as graph:
        task = graph.retry(task_id)
    _notify(workspace)
    return task


def abandon(workspace: Workspace, task_id: str, reason: str | None = None) -> Task:
    with workspace.graph_store().update() as graph:
        task = graph.abandon(task_id, reason=reason)
    _notify(workspace)
    return task


def heartbeat(workspace: Workspace, agent_id: str) -> str:
    """Record an agent heartbeat, through the daemon when one is running.

    Returns:
        The recorded heartbeat timestamp
    """
    config = workspace.load_config()
    try:
        response = send_request(workspace.socket_path(config), HeartbeatRequest(agent_id=agent_id))
        if response.ok:
            return str(response.data["last_heartbeat"])
        logger.debug(f"Daemon rejected heartbeat: {response.error}")
    except (NotRunningError, ProtocolError, OSError) as e:
        logger.debug(f"Recording heartbeat directly: {e}")
    with workspace.registry_store().update() as registry:
        return registry.heartbeat(agent_id).last_heartbeat


def _finish_agent(registry: AgentRegistry, agent_id: str | None, task_id: str, status: AgentStatus) -> None:
    if agent_id is None:
        return
    record = registry.get(agent_id)
    if record is not None and record.is_working and record.task_id == task_id:
        registry.set_status(agent_id, status)
