"""Agent supervision: dead-agent detection, reclaim and kill.

Lock order is always graph first, then registry. Signals that may block for
the kill grace period are sent before either lock is taken.
"""

from __future__ import annotations

from dataclasses import dataclass

from taskloom.constants import DEFAULT_KILL_GRACE_SECONDS, AgentStatus, DeadReason, TaskStatus
from taskloom.exceptions import AgentNotFoundError
from taskloom.graph import TaskGraph
from taskloom.logging import get_logger
from taskloom.process import ProcessControl
from taskloom.state.graph_store import GraphStore
from taskloom.state.registry import AgentRecord, RegistryStore

logger = get_logger("supervisor")


@dataclass
class DeadAgent:
    """An agent cleanup declared dead."""

    agent_id: str
    pid: int
    task_id: str
    reason: DeadReason
    reclaimed: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "agent_id": self.agent_id,
            "pid": self.pid,
            "task_id": self.task_id,
            "reason": self.reason.value,
            "reclaimed": self.reclaimed,
        }


@dataclass
class KillResult:
    """Outcome of killing one agent."""

    agent_id: str
    task_id: str
    forced: bool
    released: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "forced": self.forced,
            "released": self.released,
        }


def release_claim(graph: TaskGraph, agent: AgentRecord, reason: str) -> bool:
    """Reopen the agent's task if it is still in progress under this agent."""
    task = graph.get(agent.task_id)
    if task is None:
        logger.warning(
            f"{agent.id} held unknown task '{agent.task_id}'",
            extra={"agent_id": agent.id, "task_id": agent.task_id},
        )
        return False
    if task.status is not TaskStatus.IN_PROGRESS or task.assigned != agent.id:
        return False
    graph.unclaim(task.id, reason=reason, actor="coordinator")
    return True


def find_dead_reason(
    agent: AgentRecord, process: ProcessControl, heartbeat_timeout: float = 0
) -> DeadReason | None:
    """Why a Working agent should be considered dead, or None if it is healthy.

    Process existence is the primary signal. Timeouts and heartbeat staleness
    only apply to processes that still exist.
    """
    if not process.is_alive(agent.pid):
        return DeadReason.PROCESS_EXITED
    if agent.is_timed_out():
        return DeadReason.TIMED_OUT
    if heartbeat_timeout > 0 and agent.is_stale(heartbeat_timeout):
        return DeadReason.HEARTBEAT_STALE
    return None


def cleanup_dead_agents(
    graph_store: GraphStore,
    registry_store: RegistryStore,
    process: ProcessControl,
    heartbeat_timeout: float = 0,
) -> list[DeadAgent]:
    """Mark dead agents Dead and reclaim their in-progress tasks.

    Agents that still exist but exceeded their timeout or heartbeat threshold
    are force-killed first.

    Raises:
        RegistryCorruptError: If the registry cannot be read
    """
    snapshot = registry_store.load()
    if not any(find_dead_reason(a, process, heartbeat_timeout) for a in snapshot.working()):
        return []

    dead: list[DeadAgent] = []
    with graph_store.update() as graph, registry_store.update() as registry:
        for agent in registry.working():
            reason = find_dead_reason(agent, process, heartbeat_timeout)
            if reason is None:
                continue
            if reason is not DeadReason.PROCESS_EXITED:
                process.kill(agent.pid)
            registry.mark_dead(agent.id)
            reclaimed = release_claim(graph, agent, reason=f"agent {agent.id} {reason.value}")
            dead.append(DeadAgent(agent.id, agent.pid, agent.task_id, reason, reclaimed))
            logger.warning(
                f"{agent.id} (pid {agent.pid}) is dead: {reason.value}"
                + (f"; reclaimed task '{agent.task_id}'" if reclaimed else ""),
                extra={"agent_id": agent.id, "task_id": agent.task_id},
            )
    return dead


def kill_agent(
    graph_store: GraphStore,
    registry_store: RegistryStore,
    process: ProcessControl,
    agent_id: str,
    force: bool = False,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> KillResult:
    """Stop an agent's process and release its task claim.

    The claim is released whatever the process's exit status.

    Raises:
        AgentNotFoundError: If the agent is not registered
    """
    record = registry_store.load().require(agent_id)
    forced = False
    if record.is_working:
        if force:
            process.kill(record.pid)
            forced = True
        else:
            forced = process.stop(record.pid, grace_seconds)

    with graph_store.update() as graph, registry_store.update() as registry:
        current = registry.get(agent_id)
        if current is None:
            raise AgentNotFoundError(f"Agent '{agent_id}' disappeared during kill", agent_id)
        if current.is_working:
            registry.set_status(agent_id, AgentStatus.STOPPED)
        released = release_claim(graph, current, reason=f"agent {agent_id} killed")

    logger.info(
        f"Killed {agent_id} (pid {record.pid})" + (f", released '{record.task_id}'" if released else ""),
        extra={"agent_id": agent_id, "task_id": record.task_id},
    )
    return KillResult(agent_id=agent_id, task_id=record.task_id, forced=forced, released=released)


def kill_all_agents(
    graph_store: GraphStore,
    registry_store: RegistryStore,
    process: ProcessControl,
    force: bool = False,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> list[KillResult]:
    """Kill every Working agent; one failure does not stop the rest."""
    results = []
    for agent in registry_store.load().working():
        try:
            results.append(kill_agent(graph_store, registry_store, process, agent.id, force, grace_seconds))
        except AgentNotFoundError as e:
            logger.warning(str(e), extra={"agent_id": agent.id})
    return results


def prune_agents(registry_store: RegistryStore) -> list[str]:
    """Remove Dead and Stopped records. Explicit maintenance only."""
    with registry_store.update() as registry:
        removed = registry.prune()
    if removed:
        logger.info(f"Pruned {len(removed)} agent record(s)")
    return removed
