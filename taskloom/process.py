"""OS process control behind a small, mockable interface."""

from __future__ import annotations

import os
import signal
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from taskloom.logging import get_logger

logger = get_logger("process")


class ProcessControl(ABC):
    """Liveness probe and signalling for worker processes."""

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        """Whether a process with this pid currently exists."""

    @abstractmethod
    def terminate(self, pid: int) -> None:
        """Ask the process to exit."""

    @abstractmethod
    def kill(self, pid: int) -> None:
        """Force the process to exit."""

    def stop(
        self,
        pid: int,
        grace_seconds: float,
        poll_interval: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> bool:
        """Terminate gracefully, wait up to ``grace_seconds``, then force.

        Returns:
            True if the process had to be force-killed
        """
        if not self.is_alive(pid):
            return False
        self.terminate(pid)
        waited = 0.0
        while waited < grace_seconds:
            if not self.is_alive(pid):
                return False
            sleep(poll_interval)
            waited += poll_interval
        if not self.is_alive(pid):
            return False
        logger.warning(f"Process {pid} ignored SIGTERM for {grace_seconds}s; sending SIGKILL", extra={"pid": pid})
        self.kill(pid)
        return True


class OsProcessControl(ProcessControl):
    """POSIX implementation using signals.

    Agents run as session leaders, so signals go to the whole process group
    when the pid leads one.
    """

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        # Reap our own exited children so they do not linger as zombies
        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
            if reaped == pid:
                return False
        except ChildProcessError:
            pass
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def terminate(self, pid: int) -> None:
        self._signal(pid, signal.SIGTERM)

    def kill(self, pid: int) -> None:
        self._signal(pid, signal.SIGKILL)

    def _signal(self, pid: int, sig: signal.Signals) -> None:
        if pid <= 0:
            return
        try:
            if os.getpgid(pid) == pid:
                os.killpg(pid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            logger.debug(f"Process {pid} already gone before {sig.name}")
