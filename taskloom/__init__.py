"""Taskloom - task-graph scheduling and agent coordination daemon.

Dispatches worker processes over a dependency graph of tasks, reclaims work
from dead workers, and re-activates completed work through bounded loop edges.
"""

__version__ = "0.1.0"
__author__ = "Taskloom Team"

from taskloom.constants import AgentStatus, DaemonState, TaskStatus
from taskloom.exceptions import TaskloomError

__all__ = [
    "__version__",
    "AgentStatus",
    "DaemonState",
    "TaskStatus",
    "TaskloomError",
]
