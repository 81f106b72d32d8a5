"""Coordinator daemon lifecycle.

One daemon per working directory, enforced by an exclusive ``fcntl`` lock on
``.taskloom/service/daemon.lock`` held for the daemon's lifetime. The main
loop alternates between serving control requests and running ticks; ticks
run when a GraphChanged wake-up arrived or the poll interval elapsed.
"""

from __future__ import annotations

import fcntl
import json
import os
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from types import FrameType
from typing import IO, Any

from taskloom.client import send_request
from taskloom.config import TaskloomConfig
from taskloom.constants import AgentStatus, DaemonState
from taskloom.coordinator import Coordinator, DaemonContext, status_report
from taskloom.exceptions import (
    AlreadyRunningError,
    ConfigurationError,
    DaemonError,
    NotRunningError,
    ProtocolError,
    StateError,
    TaskloomError,
)
from taskloom.logging import get_logger, set_log_context, setup_logging
from taskloom.models import utc_now_iso
from taskloom.process import OsProcessControl
from taskloom.protocol import (
    GraphChangedRequest,
    HeartbeatRequest,
    KillRequest,
    ListAgentsRequest,
    PauseRequest,
    ReconfigureRequest,
    Request,
    Response,
    ResumeRequest,
    ShutdownRequest,
    SpawnRequest,
    StatusRequest,
)
from taskloom.server import ControlServer
from taskloom.state.persistence import atomic_write
from taskloom.supervisor import kill_agent, kill_all_agents
from taskloom.workspace import Workspace

logger = get_logger("daemon")

START_CONFIRM_SECONDS = 5.0
STOP_WAIT_SECONDS = 10.0


@dataclass
class ServiceState:
    """Contents of ``.taskloom/service/state.json``."""

    pid: int
    socket_path: str
    started_at: str
    state: str
    paused: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceState:
        return cls(
            pid=int(data["pid"]),
            socket_path=data["socket_path"],
            started_at=data.get("started_at", ""),
            state=data.get("state", DaemonState.RUNNING.value),
            paused=bool(data.get("paused", False)),
        )


def read_service_state(workspace: Workspace) -> ServiceState | None:
    """Read the recorded daemon state; None if absent or unreadable."""
    path = workspace.service_state_path
    if not path.exists():
        return None
    try:
        return ServiceState.from_dict(json.loads(path.read_text()))
    except (OSError, ValueError, KeyError) as e:
        logger.warning(f"Ignoring unreadable service state {path}: {e}")
        return None


class DaemonLock:
    """Non-blocking exclusive lock marking the directory's single daemon."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fd: IO[str] | None = None

    def acquire(self) -> None:
        """Raises AlreadyRunningError if another process holds the lock."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = open(self.path, "a+")  # noqa: SIM115
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.seek(0)
            holder = fd.read().strip()
            fd.close()
            pid = _pid_from_lock(holder)
            raise AlreadyRunningError(
                f"A taskloom daemon is already running for {self.path.parent.parent.parent}", pid
            ) from None
        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}:{time.time()}")
        fd.flush()
        self._fd = fd

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fd.truncate(0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.debug(f"Daemon lock release failed: {e}")
        fd.close()


def _pid_from_lock(content: str) -> int | None:
    try:
        return int(content.split(":", 1)[0])
    except ValueError:
        return None


class Daemon:
    """The long-running coordinator process."""

    def __init__(
        self,
        ctx: DaemonContext,
        server: ControlServer | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ctx = ctx
        self.coordinator = Coordinator(ctx)
        control = ctx.config.control
        self.server = server or ControlServer(
            ctx.workspace.socket_path(ctx.config),
            self.handle_request,
            read_timeout=control.read_timeout_seconds,
            write_timeout=control.write_timeout_seconds,
        )
        self.lock = DaemonLock(ctx.workspace.daemon_lock_path)
        self._sleep = sleep
        self._clock = clock
        self._stop_requested = False
        self._kill_agents_on_stop = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """NotRunning -> Starting -> Running.

        Raises:
            AlreadyRunningError: If another daemon owns the directory
            DaemonError: If the control socket cannot be bound
            StateError: If the graph has not been initialized
        """
        ctx = self.ctx
        if not ctx.graph_store.exists():
            raise StateError(f"No task graph at {ctx.graph_store.path}; run 'taskloom init' first")
        self.lock.acquire()
        ctx.state = DaemonState.STARTING
        try:
            stale = read_service_state(ctx.workspace)
            if stale is not None and stale.pid != os.getpid():
                logger.info(f"Cleaning up stale service state from pid {stale.pid}")
            self.server.start()
        except BaseException:
            ctx.state = DaemonState.STOPPED
            self.lock.release()
            raise

        ctx.started_at = utc_now_iso()
        ctx.started_monotonic = time.monotonic()
        ctx.graph_changed = True
        ctx.state = DaemonState.PAUSED if ctx.paused else DaemonState.RUNNING
        self._write_service_state()
        logger.info(
            f"Coordinator started (pid {os.getpid()}, max_agents={ctx.config.coordinator.max_agents}, "
            f"poll_interval={ctx.config.coordinator.poll_interval}s)"
        )

    def run(self) -> None:
        """Start, loop until a stop is requested, then shut down."""
        self.start()
        self._install_signal_handlers()
        try:
            self.serve_forever()
        finally:
            self.shutdown()

    def serve_forever(self) -> None:
        while not self._stop_requested:
            handled = self.server.poll()
            if self._stop_requested:
                break
            if self.tick_due():
                self.run_tick()
            elif not handled:
                self._sleep(self.ctx.config.control.idle_sleep_ms / 1000.0)

    def tick_due(self) -> bool:
        ctx = self.ctx
        if ctx.graph_changed or ctx.last_tick_monotonic is None:
            return True
        return self._clock() - ctx.last_tick_monotonic >= ctx.config.coordinator.poll_interval

    def run_tick(self) -> None:
        """Run one tick, isolating its failure from the loop."""
        try:
            result = self.coordinator.tick()
        except TaskloomError as e:
            logger.error(f"Tick failed: {e}")
            self.ctx.last_tick_monotonic = self._clock()
            return
        except Exception:  # noqa: BLE001
            logger.exception("Tick failed with an unexpected error")
            self.ctx.last_tick_monotonic = self._clock()
            return
        self.ctx.last_tick_monotonic = self._clock()
        if result.dispatched or result.dead_agents or result.gates_inserted:
            logger.info(
                f"Tick {result.tick}: dispatched {[d.task_id for d in result.dispatched]}, "
                f"dead {[d.agent_id for d in result.dead_agents]}, gates {result.gates_inserted}",
                extra={"tick": result.tick},
            )

    def request_stop(self, kill_agents: bool = False) -> None:
        self._stop_requested = True
        self._kill_agents_on_stop = self._kill_agents_on_stop or kill_agents

    def shutdown(self) -> None:
        """Stopping -> Stopped. Agents keep running unless asked to kill them."""
        ctx = self.ctx
        ctx.state = DaemonState.STOPPING
        if self._kill_agents_on_stop:
            try:
                killed = kill_all_agents(
                    ctx.graph_store,
                    ctx.registry_store,
                    ctx.process,
                    grace_seconds=ctx.config.coordinator.kill_grace_seconds,
                )
                logger.info(f"Killed {len(killed)} agent(s) on shutdown")
            except TaskloomError as e:
                logger.error(f"Failed to kill agents on shutdown: {e}")
        self.server.close()
        ctx.state = DaemonState.STOPPED
        try:
            ctx.workspace.service_state_path.unlink()
        except FileNotFoundError:
            pass
        self.lock.release()
        logger.info("Coordinator stopped")

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _on_signal(signum: int, frame: FrameType | None) -> None:
            logger.info(f"Received {signal.Signals(signum).name}; shutting down")
            self.request_stop()

        signal.signal(signal.SIGTERM, _on_signal)
        signal.signal(signal.SIGINT, _on_signal)

    def _write_service_state(self) -> None:
        ctx = self.ctx
        state = ServiceState(
            pid=os.getpid(),
            socket_path=str(self.server.socket_path),
            started_at=ctx.started_at or utc_now_iso(),
            state=ctx.state.value,
            paused=ctx.paused,
        )
        atomic_write(ctx.workspace.service_state_path, json.dumps(asdict(state), indent=2))

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def handle_request(self, request: Request) -> Response:
        handlers: dict[type, Callable[[Any], Response]] = {
            SpawnRequest: self._handle_spawn,
            ListAgentsRequest: self._handle_list_agents,
            KillRequest: self._handle_kill,
            HeartbeatRequest: self._handle_heartbeat,
            StatusRequest: self._handle_status,
            ShutdownRequest: self._handle_shutdown,
            GraphChangedRequest: self._handle_graph_changed,
            PauseRequest: self._handle_pause,
            ResumeRequest: self._handle_resume,
            ReconfigureRequest: self._handle_reconfigure,
        }
        return handlers[type(request)](request)

    def _handle_spawn(self, request: SpawnRequest) -> Response:
        dispatch = self.coordinator.spawn_task(
            request.task_id, executor=request.executor, model=request.model, timeout=request.timeout
        )
        return Response.success(**dispatch.to_dict())

    def _handle_list_agents(self, request: ListAgentsRequest) -> Response:
        try:
            status = AgentStatus(request.status) if request.status else None
        except ValueError:
            return Response.failure(f"Unknown agent status '{request.status}'")
        registry = self.ctx.registry_store.load()
        agents = []
        for record in registry.filter(status=status, task_id=request.task_id):
            entry = record.to_dict()
            entry["alive"] = record.is_working and self.ctx.process.is_alive(record.pid)
            entry["uptime_seconds"] = round(record.uptime_seconds(), 1)
            agents.append(entry)
        return Response.success(agents=agents)

    def _handle_kill(self, request: KillRequest) -> Response:
        ctx = self.ctx
        grace = ctx.config.coordinator.kill_grace_seconds
        if request.all:
            results = kill_all_agents(ctx.graph_store, ctx.registry_store, ctx.process, request.force, grace)
        elif request.agent_id:
            results = [
                kill_agent(ctx.graph_store, ctx.registry_store, ctx.process, request.agent_id, request.force, grace)
            ]
        else:
            return Response.failure("kill requires agent_id or all")
        ctx.graph_changed = True
        return Response.success(killed=[r.to_dict() for r in results])

    def _handle_heartbeat(self, request: HeartbeatRequest) -> Response:
        with self.ctx.registry_store.update() as registry:
            record = registry.heartbeat(request.agent_id)
        return Response.success(agent_id=record.id, last_heartbeat=record.last_heartbeat)

    def _handle_status(self, request: StatusRequest) -> Response:
        return Response.success(**status_report(self.ctx))

    def _handle_shutdown(self, request: ShutdownRequest) -> Response:
        self.request_stop(kill_agents=request.kill_agents)
        return Response.success(stopping=True, kill_agents=request.kill_agents)

    def _handle_graph_changed(self, request: GraphChangedRequest) -> Response:
        self.ctx.graph_changed = True
        return Response.success()

    def _handle_pause(self, request: PauseRequest) -> Response:
        self.ctx.paused = True
        self.ctx.state = DaemonState.PAUSED
        self._write_service_state()
        logger.info("Dispatch paused")
        return Response.success(paused=True)

    def _handle_resume(self, request: ResumeRequest) -> Response:
        self.ctx.paused = False
        self.ctx.state = DaemonState.RUNNING
        self.ctx.graph_changed = True
        self._write_service_state()
        logger.info("Dispatch resumed")
        return Response.success(paused=False)

    def _handle_reconfigure(self, request: ReconfigureRequest) -> Response:
        ctx = self.ctx
        new_config = ctx.config.merged(request.config)
        if new_config.control.socket_path != ctx.config.control.socket_path:
            raise ConfigurationError("control.socket_path cannot change while the daemon is running")
        ctx.apply_config(new_config)
        self.server.read_timeout = new_config.control.read_timeout_seconds
        self.server.write_timeout = new_config.control.write_timeout_seconds
        if request.persist:
            new_config.save(ctx.workspace.config_path)
        ctx.graph_changed = True
        logger.info(f"Reconfigured: {request.config}" + (" (persisted)" if request.persist else ""))
        return Response.success(config=new_config.to_dict(), persisted=request.persist)


# ----------------------------------------------------------------------
# Entry points used by the CLI
# ----------------------------------------------------------------------


def run_foreground(workspace: Workspace, config: TaskloomConfig | None = None) -> None:
    """Run the daemon in this process until stopped."""
    config = config or workspace.load_config()
    log = config.logging
    setup_logging(
        level=log.level,
        log_dir=workspace.root / log.directory,
        json_output=log.structured_output,
        console_output=True,
        max_bytes=log.max_log_size_mb * 1024 * 1024,
        backup_count=log.backup_count,
    )
    set_log_context(component="daemon")
    Daemon(DaemonContext.create(workspace, config)).run()


def query_daemon(workspace: Workspace, request: Any, timeout: float | None = None) -> Response:
    """Send a request to this directory's daemon.

    Raises:
        NotRunningError: If no daemon is listening
    """
    config = workspace.load_config()
    state = read_service_state(workspace)
    socket_path = state.socket_path if state else workspace.socket_path(config)
    return send_request(socket_path, request, timeout=timeout or config.control.read_timeout_seconds)


def is_running(workspace: Workspace) -> bool:
    try:
        return query_daemon(workspace, StatusRequest()).ok
    except (NotRunningError, ProtocolError, OSError):
        return False


def start_detached(workspace: Workspace, wait_seconds: float = START_CONFIRM_SECONDS) -> int:
    """Launch ``python -m taskloom service run`` in a new session.

    Returns:
        Daemon pid

    Raises:
        AlreadyRunningError: If a daemon already answers for this directory
        DaemonError: If the new process exits or never answers
    """
    if is_running(workspace):
        state = read_service_state(workspace)
        raise AlreadyRunningError("A taskloom daemon is already running", state.pid if state else None)

    log_dir = workspace.root / workspace.load_config().logging.directory
    log_dir.mkdir(parents=True, exist_ok=True)
    with open(log_dir / "daemon.out", "ab") as out:
        process = subprocess.Popen(
            [sys.executable, "-m", "taskloom", "--dir", str(workspace.root), "service", "run"],
            cwd=workspace.root,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    deadline = time.monotonic() + wait_seconds
    while time.monotonic() < deadline:
        if process.poll() is not None:
            raise DaemonError(
                f"Daemon exited during startup with code {process.returncode}",
                {"log": str(log_dir / "daemon.out")},
            )
        if is_running(workspace):
            return process.pid
        time.sleep(0.1)
    raise DaemonError("Daemon did not answer within the startup window", {"pid": process.pid})


def stop_daemon(workspace: Workspace, kill_agents: bool = False, wait_seconds: float = STOP_WAIT_SECONDS) -> bool:
    """Ask the daemon to shut down, falling back to SIGTERM on the recorded pid.

    Returns:
        True if a daemon was running and has stopped
    """
    state = read_service_state(workspace)
    try:
        query_daemon(workspace, ShutdownRequest(kill_agents=kill_agents))
    except (NotRunningError, ProtocolError, OSError) as e:
        if state is None:
            return False
        logger.warning(f"Control socket unresponsive ({e}); sending SIGTERM to pid {state.pid}")
        try:
            os.kill(state.pid, signal.SIGTERM)
        except ProcessLookupError:
            workspace.service_state_path.unlink(missing_ok=True)
            return False

    if state is None:
        return True
    process = OsProcessControl()
    deadline = time.monotonic() + wait_seconds
    while time.monotonic() < deadline:
        if not process.is_alive(state.pid):
            return True
        time.sleep(0.1)
    raise DaemonError(f"Daemon pid {state.pid} did not exit within {wait_seconds}s")
