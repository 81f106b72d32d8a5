"""SubprocessLauncher: agents as detached local processes."""

from __future__ import annotations

import os
import subprocess

from taskloom.constants import ENV_AGENT_ID, ENV_TASK_ID
from taskloom.launcher_types import LaunchSpec, SpawnResult
from taskloom.launchers.base import WorkerLauncher
from taskloom.logging import get_logger

logger = get_logger("launcher")


class SubprocessLauncher(WorkerLauncher):
    """Launch agents with subprocess.Popen in their own session.

    A new session detaches the agent from the daemon's process group, so
    stopping the daemon leaves in-flight agents running.
    """

    def __init__(self) -> None:
        # Handles of live children, so Popen does not warn about them on collection
        self._processes: dict[str, subprocess.Popen[bytes]] = {}

    @property
    def tracked(self) -> list[str]:
        return list(self._processes)

    def prune(self) -> None:
        """Drop handles of children that have exited."""
        self._processes = {aid: p for aid, p in self._processes.items() if p.poll() is None}

    def spawn(self, spec: LaunchSpec) -> SpawnResult:
        self.prune()
        output = None
        try:
            env = os.environ.copy()
            env.update(spec.env)
            env[ENV_AGENT_ID] = spec.agent_id
            env[ENV_TASK_ID] = spec.task_id

            if spec.output_file is not None:
                spec.output_file.parent.mkdir(parents=True, exist_ok=True)
                output = spec.output_file.open("ab")  # noqa: SIM115

            process = subprocess.Popen(
                spec.command,
                env=env,
                cwd=spec.working_dir,
                stdin=subprocess.DEVNULL,
                stdout=output or subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to spawn {spec.agent_id}: {e}", extra={"agent_id": spec.agent_id, "task_id": spec.task_id})
            return SpawnResult(success=False, agent_id=spec.agent_id, error=str(e))
        finally:
            # The child holds its own descriptor
            if output is not None:
                output.close()

        self._processes[spec.agent_id] = process
        logger.info(
            f"Spawned {spec.agent_id} (pid {process.pid}) for task '{spec.task_id}'",
            extra={"agent_id": spec.agent_id, "task_id": spec.task_id},
        )
        return SpawnResult(success=True, agent_id=spec.agent_id, pid=process.pid)
