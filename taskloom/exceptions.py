"""Taskloom exception hierarchy."""

from typing import Any


class TaskloomError(Exception):
    """Base exception for all Taskloom errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(TaskloomError):
    """Error in Taskloom configuration."""

    pass


class StateError(TaskloomError):
    """Error reading or writing durable state."""

    pass


class GraphParseError(StateError):
    """The graph file contains a record that cannot be parsed."""

    def __init__(self, message: str, path: str, line: int | None = None) -> None:
        super().__init__(message, {"path": path, "line": line})
        self.path = path
        self.line = line


class RegistryCorruptError(StateError):
    """The agent registry document cannot be parsed."""

    def __init__(self, message: str, path: str) -> None:
        super().__init__(message, {"path": path})
        self.path = path


class LockTimeoutError(StateError):
    """An exclusive lock could not be acquired within the retry budget."""

    def __init__(self, message: str, path: str, attempts: int) -> None:
        super().__init__(message, {"path": path, "attempts": attempts})
        self.path = path
        self.attempts = attempts


class TaskError(TaskloomError):
    """Base error for task-related issues."""

    def __init__(
        self, message: str, task_id: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details)
        self.task_id = task_id


class TaskNotFoundError(TaskError):
    """Referenced task does not exist in the graph."""

    pass


class DuplicateTaskError(TaskError):
    """A task with this id already exists."""

    pass


class InvalidTransitionError(TaskError):
    """Status change not permitted by the task state machine."""

    def __init__(self, message: str, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(message, task_id, {"from": from_status, "to": to_status})
        self.from_status = from_status
        self.to_status = to_status


class CycleError(TaskError):
    """A blocking edge would introduce a dependency cycle."""

    def __init__(self, message: str, task_id: str, cycle: list[str]) -> None:
        super().__init__(message, task_id, {"cycle": cycle})
        self.cycle = cycle


class LoopEdgeError(TaskError):
    """Malformed loop edge."""

    pass


class AgentError(TaskloomError):
    """Base error for agent-related issues."""

    def __init__(
        self, message: str, agent_id: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details)
        self.agent_id = agent_id


class AgentNotFoundError(AgentError):
    """Referenced agent does not exist in the registry."""

    pass


class SpawnError(AgentError):
    """Agent process could not be started."""

    pass


class ExecutorError(TaskloomError):
    """Executor configuration could not be resolved."""

    def __init__(
        self, message: str, executor: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details)
        self.executor = executor


class DaemonError(TaskloomError):
    """Base error for coordinator daemon issues."""

    pass


class AlreadyRunningError(DaemonError):
    """Another daemon already owns this working directory."""

    def __init__(self, message: str, pid: int | None = None) -> None:
        super().__init__(message, {"pid": pid} if pid else None)
        self.pid = pid


class NotRunningError(DaemonError):
    """No daemon is listening on the control socket."""

    pass


class ProtocolError(DaemonError):
    """Malformed control-channel message."""

    pass
