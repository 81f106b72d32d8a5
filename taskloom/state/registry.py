"""Durable registry of spawned agents."""

from __future__ import annotations

import contextlib
import json
from collections.abc import Iterator
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from taskloom.constants import REGISTRY_FILE, AgentStatus
from taskloom.exceptions import AgentNotFoundError, RegistryCorruptError, StateError
from taskloom.logging import get_logger
from taskloom.models import parse_timestamp, utc_now, utc_now_iso
from taskloom.state.persistence import FileLock, atomic_write

logger = get_logger("state.registry")

AGENT_ID_PREFIX = "agent-"


@dataclass
class AgentRecord:
    """One spawned worker process."""

    id: str
    pid: int
    task_id: str
    executor: str
    started_at: str
    last_heartbeat: str
    status: AgentStatus = AgentStatus.WORKING
    output_file: str | None = None
    timeout_seconds: int | None = None
    ended_at: str | None = None

    @property
    def is_working(self) -> bool:
        return self.status is AgentStatus.WORKING

    def uptime_seconds(self) -> float:
        started = parse_timestamp(self.started_at)
        if started is None:
            return 0.0
        return max(0.0, (utc_now() - started).total_seconds())

    def heartbeat_age_seconds(self) -> float | None:
        last = parse_timestamp(self.last_heartbeat)
        if last is None:
            return None
        return max(0.0, (utc_now() - last).total_seconds())

    def is_stale(self, timeout_seconds: float) -> bool:
        """True if the last heartbeat is older than ``timeout_seconds``.

        An unparseable heartbeat counts as stale.
        """
        age = self.heartbeat_age_seconds()
        return age is None or age > timeout_seconds

    def is_timed_out(self) -> bool:
        return bool(self.timeout_seconds) and self.uptime_seconds() > (self.timeout_seconds or 0)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRecord:
        return cls(
            id=data["id"],
            pid=int(data["pid"]),
            task_id=data["task_id"],
            executor=data.get("executor", ""),
            started_at=data.get("started_at", ""),
            last_heartbeat=data.get("last_heartbeat", data.get("started_at", "")),
            status=AgentStatus(data.get("status", AgentStatus.WORKING.value)),
            output_file=data.get("output_file"),
            timeout_seconds=data.get("timeout_seconds"),
            ended_at=data.get("ended_at"),
        )


class AgentRegistry:
    """In-memory view of the registry document."""

    def __init__(self, agents: dict[str, AgentRecord] | None = None, next_agent_id: int = 1) -> None:
        self.agents: dict[str, AgentRecord] = agents or {}
        self.next_agent_id = next_agent_id

    def reserve_id(self) -> str:
        """Allocate the next sequential agent id."""
        agent_id = f"{AGENT_ID_PREFIX}{self.next_agent_id}"
        self.next_agent_id += 1
        return agent_id

    def register(
        self,
        agent_id: str,
        pid: int,
        task_id: str,
        executor: str,
        output_file: str | None = None,
        timeout_seconds: int | None = None,
    ) -> AgentRecord:
        """Create a Working record for a freshly spawned process."""
        if agent_id in self.agents:
            raise StateError(f"Agent '{agent_id}' is already registered")
        now = utc_now_iso()
        record = AgentRecord(
            id=agent_id,
            pid=pid,
            task_id=task_id,
            executor=executor,
            started_at=now,
            last_heartbeat=now,
            output_file=output_file,
            timeout_seconds=timeout_seconds,
        )
        self.agents[agent_id] = record
        logger.info(f"Registered {agent_id} (pid {pid}) for task '{task_id}'", extra={"agent_id": agent_id, "task_id": task_id})
        return record

    def get(self, agent_id: str) -> AgentRecord | None:
        return self.agents.get(agent_id)

    def require(self, agent_id: str) -> AgentRecord:
        record = self.agents.get(agent_id)
        if record is None:
            raise AgentNotFoundError(f"Agent '{agent_id}' not found", agent_id)
        return record

    def set_status(self, agent_id: str, status: AgentStatus) -> AgentRecord:
        record = self.require(agent_id)
        record.status = status
        if status is not AgentStatus.WORKING and record.ended_at is None:
            record.ended_at = utc_now_iso()
        return record

    def mark_dead(self, agent_id: str) -> AgentRecord:
        return self.set_status(agent_id, AgentStatus.DEAD)

    def heartbeat(self, agent_id: str) -> AgentRecord:
        record = self.require(agent_id)
        record.last_heartbeat = utc_now_iso()
        return record

    def working(self) -> list[AgentRecord]:
        return [a for a in self.agents.values() if a.is_working]

    def count_working(self) -> int:
        return len(self.working())

    def agent_for_task(self, task_id: str) -> AgentRecord | None:
        """The Working agent holding ``task_id``, if any."""
        for record in self.agents.values():
            if record.is_working and record.task_id == task_id:
                return record
        return None

    def filter(self, status: AgentStatus | None = None, task_id: str | None = None) -> list[AgentRecord]:
        return [
            a
            for a in self.agents.values()
            if (status is None or a.status is status) and (task_id is None or a.task_id == task_id)
        ]

    def counts_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in AgentStatus}
        for record in self.agents.values():
            counts[record.status.value] += 1
        return counts

    def prune(self, statuses: tuple[AgentStatus, ...] = (AgentStatus.DEAD, AgentStatus.STOPPED)) -> list[str]:
        """Remove records in the given terminal statuses; returns removed ids."""
        removed = [agent_id for agent_id, a in self.agents.items() if a.status in statuses]
        for agent_id in removed:
            del self.agents[agent_id]
        return removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "agents": {agent_id: a.to_dict() for agent_id, a in self.agents.items()},
            "next_agent_id": self.next_agent_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRegistry:
        agents = {agent_id: AgentRecord.from_dict(a) for agent_id, a in data.get("agents", {}).items()}
        return cls(agents=agents, next_agent_id=int(data.get("next_agent_id", 1)))


class RegistryStore:
    """Registry document on disk, guarded by its own exclusive lock."""

    def __init__(self, path: str | Path | None = None, lock: FileLock | None = None) -> None:
        self.path = Path(path or REGISTRY_FILE)
        self.lock = lock or FileLock(self.path.with_name(f".{self.path.stem}.lock"))

    def load(self) -> AgentRegistry:
        """Read the registry. A missing file is an empty registry.

        Raises:
            RegistryCorruptError: If the document cannot be parsed
        """
        if not self.path.exists():
            return AgentRegistry()
        try:
            data = json.loads(self.path.read_text())
            if not isinstance(data, dict):
                raise ValueError("registry root is not an object")
            return AgentRegistry.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            raise RegistryCorruptError(f"Agent registry {self.path} is corrupt: {e}", str(self.path)) from e
        except OSError as e:
            raise StateError(f"Cannot read {self.path}", {"error": str(e)}) from e

    def save(self, registry: AgentRegistry) -> None:
        atomic_write(self.path, json.dumps(registry.to_dict(), indent=2))

    @contextlib.contextmanager
    def update(self) -> Iterator[AgentRegistry]:
        """Locked read-modify-write. The registry is saved only if the block succeeds."""
        with self.lock.hold():
            registry = self.load()
            yield registry
            self.save(registry)
