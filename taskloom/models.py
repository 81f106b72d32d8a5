"""Task graph data types.

Tasks, loop edges, loop guards and audit log entries. Each type round-trips
through a plain dict so the graph store can write one JSON object per line.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from taskloom.constants import TaskStatus
from taskloom.exceptions import LoopEdgeError

GUARD_TASK_STATUS = "task_status"
GUARD_ITERATION_LESS_THAN = "iteration_less_than"
GUARD_ALWAYS = "always"
GUARD_KINDS = (GUARD_TASK_STATUS, GUARD_ITERATION_LESS_THAN, GUARD_ALWAYS)

# Counters left out of the serialized form while still zero
_ZERO_DEFAULTS = frozenset({"loop_iteration", "retry_count"})


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """Current time as an ISO 8601 string in UTC."""
    return utc_now().isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC.

    Returns None for missing or unparseable values.
    """
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


@dataclass
class LogEntry:
    """Auditable entry appended to a task on every mutation."""

    timestamp: str
    message: str
    actor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp, "message": self.message}
        if self.actor is not None:
            data["actor"] = self.actor
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        return cls(
            timestamp=data.get("timestamp", ""),
            message=data.get("message", ""),
            actor=data.get("actor"),
        )


@dataclass
class LoopGuard:
    """Condition checked when a loop edge's source task completes.

    Kinds:
        task_status: fires when ``task`` currently has ``status``
        iteration_less_than: fires while the target's loop_iteration < ``value``
        always: fires unconditionally (still bounded by max_iterations)
    """

    kind: str
    task: str | None = None
    status: TaskStatus | None = None
    value: int | None = None

    def __post_init__(self) -> None:
        if self.kind not in GUARD_KINDS:
            raise LoopEdgeError(f"Unknown loop guard kind: {self.kind}")
        if self.kind == GUARD_TASK_STATUS and (not self.task or self.status is None):
            raise LoopEdgeError("task_status guard requires 'task' and 'status'")
        if self.kind == GUARD_ITERATION_LESS_THAN and self.value is None:
            raise LoopEdgeError("iteration_less_than guard requires 'value'")

    @classmethod
    def task_status(cls, task_id: str, status: TaskStatus) -> LoopGuard:
        return cls(kind=GUARD_TASK_STATUS, task=task_id, status=status)

    @classmethod
    def iteration_less_than(cls, value: int) -> LoopGuard:
        return cls(kind=GUARD_ITERATION_LESS_THAN, value=value)

    @classmethod
    def always(cls) -> LoopGuard:
        return cls(kind=GUARD_ALWAYS)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind}
        if self.kind == GUARD_TASK_STATUS:
            data["task"] = self.task
            data["status"] = self.status.value if self.status else None
        elif self.kind == GUARD_ITERATION_LESS_THAN:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopGuard:
        status = data.get("status")
        try:
            parsed_status = TaskStatus(status) if status is not None else None
        except ValueError as e:
            raise LoopEdgeError(f"Unknown task status in loop guard: {status}") from e
        return cls(
            kind=data.get("kind", GUARD_ALWAYS),
            task=data.get("task"),
            status=parsed_status,
            value=data.get("value"),
        )


@dataclass
class LoopEdge:
    """Non-blocking back-edge that can reopen ``target`` when its source completes."""

    target: str
    max_iterations: int
    guard: LoopGuard | None = None
    delay: str | None = None

    def __post_init__(self) -> None:
        if not self.target:
            raise LoopEdgeError("Loop edge requires a target")
        if not isinstance(self.max_iterations, int) or self.max_iterations < 1:
            raise LoopEdgeError(
                f"Loop edge to '{self.target}' needs max_iterations >= 1, got {self.max_iterations}"
            )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"target": self.target, "max_iterations": self.max_iterations}
        if self.guard is not None:
            data["guard"] = self.guard.to_dict()
        if self.delay is not None:
            data["delay"] = self.delay
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopEdge:
        if "max_iterations" not in data:
            raise LoopEdgeError(f"Loop edge to '{data.get('target')}' is missing max_iterations")
        guard = data.get("guard")
        return cls(
            target=data.get("target", ""),
            max_iterations=data["max_iterations"],
            guard=LoopGuard.from_dict(guard) if guard else None,
            delay=data.get("delay"),
        )


@dataclass
class Task:
    """A unit of work in the task graph."""

    id: str
    title: str
    description: str | None = None
    status: TaskStatus = TaskStatus.OPEN
    assigned: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    loop_edges: list[LoopEdge] = field(default_factory=list)
    loop_iteration: int = 0
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    not_before: str | None = None
    ready_after: str | None = None
    retry_count: int = 0
    max_retries: int | None = None
    failure_reason: str | None = None
    # Opaque to the scheduler
    tags: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    exec: str | None = None
    executor: str | None = None
    model: str | None = None
    agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    log: list[LogEntry] = field(default_factory=list)

    def add_log(self, message: str, actor: str | None = None) -> None:
        self.log.append(LogEntry(timestamp=utc_now_iso(), message=message, actor=actor))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict, omitting empty optional fields."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
        }
        optional: dict[str, Any] = {
            "description": self.description,
            "assigned": self.assigned,
            "blocked_by": self.blocked_by,
            "blocks": self.blocks,
            "loop_edges": [edge.to_dict() for edge in self.loop_edges],
            "loop_iteration": self.loop_iteration,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "not_before": self.not_before,
            "ready_after": self.ready_after,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "failure_reason": self.failure_reason,
            "tags": self.tags,
            "skills": self.skills,
            "exec": self.exec,
            "executor": self.executor,
            "model": self.model,
            "agent": self.agent,
            "metadata": self.metadata,
            "log": [entry.to_dict() for entry in self.log],
        }
        for key, value in optional.items():
            if value is None or value in ([], {}) or (key in _ZERO_DEFAULTS and value == 0):
                continue
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Build a Task from its dict form.

        Raises:
            KeyError: If ``id`` is missing
            ValueError: If ``status`` is not a known TaskStatus
        """
        return cls(
            id=data["id"],
            title=data.get("title", data["id"]),
            description=data.get("description"),
            status=TaskStatus(data.get("status", TaskStatus.OPEN.value)),
            assigned=data.get("assigned"),
            blocked_by=list(data.get("blocked_by", [])),
            blocks=list(data.get("blocks", [])),
            loop_edges=[LoopEdge.from_dict(e) for e in data.get("loop_edges", [])],
            loop_iteration=int(data.get("loop_iteration", 0)),
            created_at=data.get("created_at"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            not_before=data.get("not_before"),
            ready_after=data.get("ready_after"),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=data.get("max_retries"),
            failure_reason=data.get("failure_reason"),
            tags=list(data.get("tags", [])),
            skills=list(data.get("skills", [])),
            exec=data.get("exec"),
            executor=data.get("executor"),
            model=data.get("model"),
            agent=data.get("agent"),
            metadata=dict(data.get("metadata", {})),
            log=[LogEntry.from_dict(e) for e in data.get("log", [])],
        )
