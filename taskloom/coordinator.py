"""Coordinator tick and dispatch.

A tick reclaims dead agents, computes the ready set, optionally inserts
assignment/evaluation gates, and dispatches agents into free slots. A task is
claimed only after its agent process has been confirmed spawned.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskloom.config import TaskloomConfig
from taskloom.constants import DaemonState, TaskStatus
from taskloom.exceptions import ExecutorError, InvalidTransitionError, SpawnError, TaskloomError
from taskloom.executor import ExecutorRegistry
from taskloom.gating import apply_gate_insertions, plan_assignment_gates, plan_evaluation_gates
from taskloom.graph import TaskGraph
from taskloom.launchers.base import WorkerLauncher
from taskloom.launchers.subprocess_launcher import SubprocessLauncher
from taskloom.logging import get_logger, get_task_logger
from taskloom.models import utc_now_iso
from taskloom.process import OsProcessControl, ProcessControl
from taskloom.retry_backoff import SpawnCooldown
from taskloom.scheduler import compute_ready, count_by_status
from taskloom.state.graph_store import GraphStore
from taskloom.state.registry import RegistryStore
from taskloom.supervisor import DeadAgent, cleanup_dead_agents
from taskloom.workspace import Workspace

logger = get_logger("coordinator")


@dataclass
class DaemonContext:
    """All state owned by one running coordinator.

    Passed explicitly to the tick and to request handlers; there is no
    module-level daemon singleton.
    """

    workspace: Workspace
    config: TaskloomConfig
    graph_store: GraphStore
    registry_store: RegistryStore
    executors: ExecutorRegistry
    launcher: WorkerLauncher
    process: ProcessControl
    cooldown: SpawnCooldown
    state: DaemonState = DaemonState.NOT_RUNNING
    paused: bool = False
    graph_changed: bool = False
    tick_count: int = 0
    started_at: str | None = None
    started_monotonic: float | None = None
    last_tick_monotonic: float | None = None
    last_tick: TickResult | None = None

    @classmethod
    def create(
        cls,
        workspace: Workspace,
        config: TaskloomConfig | None = None,
        launcher: WorkerLauncher | None = None,
        process: ProcessControl | None = None,
    ) -> DaemonContext:
        config = config or workspace.load_config()
        coordinator = config.coordinator
        return cls(
            workspace=workspace,
            config=config,
            graph_store=workspace.graph_store(),
            registry_store=workspace.registry_store(),
            executors=ExecutorRegistry(workspace.root),
            launcher=launcher or SubprocessLauncher(),
            process=process or OsProcessControl(),
            cooldown=SpawnCooldown(
                coordinator.spawn_backoff_strategy,
                coordinator.spawn_backoff_base_seconds,
                coordinator.spawn_backoff_max_seconds,
            ),
        )

    def apply_config(self, config: TaskloomConfig) -> None:
        """Swap in a new configuration for the running coordinator."""
        self.config = config
        c = config.coordinator
        self.cooldown.reconfigure(c.spawn_backoff_strategy, c.spawn_backoff_base_seconds, c.spawn_backoff_max_seconds)

    def uptime_seconds(self) -> float:
        if self.started_monotonic is None:
            return 0.0
        return time.monotonic() - self.started_monotonic


@dataclass
class Dispatch:
    task_id: str
    agent_id: str
    pid: int
    executor: str
    output_file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "pid": self.pid,
            "executor": self.executor,
            "output_file": self.output_file,
        }


@dataclass
class TickResult:
    """What one tick observed and did."""

    tick: int
    dead_agents: list[DeadAgent] = field(default_factory=list)
    ready: list[str] = field(default_factory=list)
    gates_inserted: list[str] = field(default_factory=list)
    working: int = 0
    slots: int = 0
    dispatched: list[Dispatch] = field(default_factory=list)
    spawn_failures: dict[str, str] = field(default_factory=dict)
    cooling_down: list[str] = field(default_factory=list)
    dispatch_skipped: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick": self.tick,
            "dead_agents": [d.to_dict() for d in self.dead_agents],
            "ready": self.ready,
            "gates_inserted": self.gates_inserted,
            "working": self.working,
            "slots": self.slots,
            "dispatched": [d.to_dict() for d in self.dispatched],
            "spawn_failures": self.spawn_failures,
            "cooling_down": self.cooling_down,
            "dispatch_skipped": self.dispatch_skipped,
        }


class Coordinator:
    """Runs ticks and dispatches against a DaemonContext."""

    def __init__(self, ctx: DaemonContext) -> None:
        self.ctx = ctx

    def tick(self) -> TickResult:
        """One scheduling cycle.

        Raises:
            StateError: If the graph or registry cannot be read
        """
        ctx = self.ctx
        ctx.tick_count += 1
        ctx.graph_changed = False
        result = TickResult(tick=ctx.tick_count)
        coordinator = ctx.config.coordinator

        # Reclaim before counting capacity
        result.dead_agents = cleanup_dead_agents(
            ctx.graph_store, ctx.registry_store, ctx.process, coordinator.heartbeat_timeout_seconds
        )

        result.working = ctx.registry_store.load().count_working()
        result.slots = max(0, coordinator.max_agents - result.working)

        graph = ctx.graph_store.load()
        result.ready = compute_ready(graph)

        if ctx.config.gating.auto_assign or ctx.config.gating.auto_evaluate:
            result.gates_inserted = self._apply_gating(graph, result.ready)
            if result.gates_inserted:
                graph = ctx.graph_store.load()
                result.ready = compute_ready(graph)

        ctx.cooldown.forget_except({t.id for t in graph if t.status is TaskStatus.OPEN})

        if ctx.paused:
            result.dispatch_skipped = "paused"
        elif result.slots == 0:
            result.dispatch_skipped = "at capacity"
        else:
            self._dispatch_ready(result)

        ctx.last_tick = result
        ctx.last_tick_monotonic = time.monotonic()
        logger.debug(
            f"Tick {result.tick}: {len(result.ready)} ready, {len(result.dispatched)} dispatched, "
            f"{result.working + len(result.dispatched)}/{coordinator.max_agents} working",
            extra={"tick": result.tick},
        )
        return result

    def _apply_gating(self, graph: TaskGraph, ready: list[str]) -> list[str]:
        gating = self.ctx.config.gating
        planned = []
        if gating.auto_assign:
            planned.extend(plan_assignment_gates(graph, ready, gating))
        if gating.auto_evaluate:
            planned.extend(plan_evaluation_gates(graph, gating))
        if not planned:
            return []

        # Re-plan against the locked copy; a concurrent writer may have changed it
        with self.ctx.graph_store.update() as locked:
            edits = []
            if gating.auto_assign:
                edits.extend(plan_assignment_gates(locked, compute_ready(locked), gating))
            if gating.auto_evaluate:
                edits.extend(plan_evaluation_gates(locked, gating))
            return apply_gate_insertions(locked, edits)

    def _dispatch_ready(self, result: TickResult) -> None:
        for task_id in result.ready:
            if len(result.dispatched) >= result.slots:
                break
            if self.ctx.cooldown.is_cooling(task_id):
                result.cooling_down.append(task_id)
                continue
            try:
                result.dispatched.append(self.spawn_task(task_id))
            except InvalidTransitionError as e:
                # Claimed elsewhere between readiness and dispatch
                logger.debug(str(e), extra={"task_id": task_id})
            except TaskloomError as e:
                result.spawn_failures[task_id] = str(e)
                logger.error(f"Dispatch of '{task_id}' failed: {e}", extra={"task_id": task_id})

    def spawn_task(
        self,
        task_id: str,
        executor: str | None = None,
        model: str | None = None,
        timeout: int | None = None,
    ) -> Dispatch:
        """Spawn an agent for an Open, unassigned task and claim it.

        Both stores are held for the whole operation. If the spawn fails,
        nothing is written and the task stays Open.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidTransitionError: If the task is not Open or already assigned
            SpawnError: If the process could not be started
            ExecutorError: If the executor cannot be resolved for this task
        """
        ctx = self.ctx
        spawned = None
        try:
            with ctx.graph_store.update() as graph, ctx.registry_store.update() as registry:
                task = graph.require(task_id)
                if task.status is not TaskStatus.OPEN or task.assigned is not None:
                    raise InvalidTransitionError(
                        f"Task '{task_id}' is {task.status.value}"
                        + (f" and assigned to {task.assigned}" if task.assigned else "")
                        + "; only open, unassigned tasks can be spawned",
                        task_id,
                        task.status.value,
                        TaskStatus.IN_PROGRESS.value,
                    )
                holder = registry.agent_for_task(task_id)
                if holder is not None:
                    raise InvalidTransitionError(
                        f"Task '{task_id}' already has working agent {holder.id}",
                        task_id,
                        task.status.value,
                        TaskStatus.IN_PROGRESS.value,
                    )

                agent_id = registry.reserve_id()
                executor_name = executor or task.executor or ctx.config.coordinator.executor
                spec = ctx.executors.build(task, agent_id, executor_name, model or ctx.config.coordinator.model)
                if timeout is not None:
                    spec.timeout_seconds = timeout

                spawned = ctx.launcher.spawn(spec)
                if not spawned.success or spawned.pid is None:
                    raise SpawnError(spawned.error or "launcher reported failure", agent_id, {"task_id": task_id})

                graph.claim(task_id, agent_id, actor="coordinator")
                registry.register(
                    agent_id,
                    spawned.pid,
                    task_id,
                    spec.executor,
                    output_file=str(spec.output_file) if spec.output_file else None,
                    timeout_seconds=spec.timeout_seconds,
                )
        except (SpawnError, ExecutorError) as e:
            ctx.cooldown.record_failure(task_id, str(e))
            raise
        except Exception:
            # The claim did not persist; an unrecorded agent must not keep running
            if spawned is not None and spawned.success and spawned.pid is not None:
                logger.error(
                    f"Recording agent for '{task_id}' failed; killing pid {spawned.pid}",
                    extra={"task_id": task_id, "pid": spawned.pid},
                )
                ctx.process.kill(spawned.pid)
            raise

        ctx.cooldown.record_success(task_id)
        get_task_logger(task_id, agent_id).info(
            f"Dispatched to {agent_id} (pid {spawned.pid}, executor {spec.executor})"
        )
        return Dispatch(
            task_id=task_id,
            agent_id=agent_id,
            pid=spawned.pid,
            executor=spec.executor,
            output_file=str(spec.output_file) if spec.output_file else None,
        )


def status_report(ctx: DaemonContext) -> dict[str, Any]:
    """Status snapshot, read without locks.

    Raises:
        StateError: If the graph or registry cannot be read
    """
    registry = ctx.registry_store.load()
    graph = ctx.graph_store.load()
    return {
        "running": ctx.state in (DaemonState.RUNNING, DaemonState.PAUSED),
        "state": ctx.state.value,
        "pid": os.getpid(),
        "started_at": ctx.started_at,
        "uptime_seconds": round(ctx.uptime_seconds(), 1),
        "paused": ctx.paused,
        "max_agents": ctx.config.coordinator.max_agents,
        "poll_interval": ctx.config.coordinator.poll_interval,
        "agents": registry.counts_by_status(),
        "tasks": count_by_status(graph),
        "ticks": ctx.tick_count,
        "last_tick": ctx.last_tick.to_dict() if ctx.last_tick else None,
        "cooldowns": ctx.cooldown.snapshot(),
        "socket": str(ctx.workspace.socket_path(ctx.config)),
        "workdir": str(Path(ctx.workspace.root)),
        "reported_at": utc_now_iso(),
    }
