"""Agent launcher backends."""

from taskloom.launchers.base import WorkerLauncher
from taskloom.launchers.subprocess_launcher import SubprocessLauncher

__all__ = ["SubprocessLauncher", "WorkerLauncher"]
