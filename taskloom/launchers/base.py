"""WorkerLauncher abstract base class."""

from __future__ import annotations

from abc import ABC, abstractmethod

from taskloom.launcher_types import LaunchSpec, SpawnResult


class WorkerLauncher(ABC):
    """Starts agent processes.

    A launcher only starts processes and reports their pid. Liveness and
    termination go through :class:`taskloom.process.ProcessControl`, so the
    coordinator never waits on a worker.
    """

    @abstractmethod
    def spawn(self, spec: LaunchSpec) -> SpawnResult:
        """Start the command described by ``spec``.

        Returns:
            SpawnResult with the pid or an error; never raises for spawn failures
        """
