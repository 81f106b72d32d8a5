"""Taskloom constants and enumerations."""

from enum import Enum


class TaskStatus(Enum):
    """Task lifecycle status."""

    OPEN = "open"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        """Terminal for gating purposes: the task has reached an outcome."""
        return self in (TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.ABANDONED)


class AgentStatus(Enum):
    """Agent (worker process) status."""

    WORKING = "working"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"
    DEAD = "dead"


class DaemonState(Enum):
    """Coordinator daemon process states."""

    NOT_RUNNING = "not_running"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"


class DeadReason(Enum):
    """Why cleanup declared an agent dead."""

    PROCESS_EXITED = "process_exited"
    HEARTBEAT_STALE = "heartbeat_stale"
    TIMED_OUT = "timed_out"


# Workspace layout, relative to the working directory
TASKLOOM_DIR = ".taskloom"
GRAPH_FILE = f"{TASKLOOM_DIR}/graph.jsonl"
CONFIG_FILE = f"{TASKLOOM_DIR}/config.yaml"
SERVICE_DIR = f"{TASKLOOM_DIR}/service"
REGISTRY_FILE = f"{SERVICE_DIR}/registry.json"
SERVICE_STATE_FILE = f"{SERVICE_DIR}/state.json"
DAEMON_LOCK_FILE = f"{SERVICE_DIR}/daemon.lock"
AGENTS_DIR = f"{TASKLOOM_DIR}/agents"
EXECUTORS_DIR = f"{TASKLOOM_DIR}/executors"
LOGS_DIR = f"{TASKLOOM_DIR}/logs"

# Gate task prefixes
ASSIGN_GATE_PREFIX = "assign-"
EVALUATE_GATE_PREFIX = "evaluate-"
GATE_TAG_ASSIGNMENT = "assignment"
GATE_TAG_EVALUATION = "evaluation"

# Defaults
DEFAULT_MAX_AGENTS = 4
DEFAULT_POLL_INTERVAL_SECONDS = 60
DEFAULT_EXECUTOR = "shell"
DEFAULT_KILL_GRACE_SECONDS = 5
DEFAULT_SOCKET_TIMEOUT_SECONDS = 5
DEFAULT_IDLE_SLEEP_MS = 100
DEFAULT_LOCK_ATTEMPTS = 50
DEFAULT_LOCK_RETRY_DELAY = 0.1
SOCKET_DIR = "/tmp"

# Environment variables handed to spawned agents
ENV_AGENT_ID = "TASKLOOM_AGENT_ID"
ENV_TASK_ID = "TASKLOOM_TASK_ID"
ENV_WORKDIR = "TASKLOOM_DIR"
