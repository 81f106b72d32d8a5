"""Tests for the daemon lifecycle and request handlers."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from taskloom.constants import AgentStatus, DaemonState, TaskStatus
from taskloom.coordinator import DaemonContext
from taskloom.daemon import Daemon, DaemonLock, read_service_state
from taskloom.exceptions import AlreadyRunningError, ConfigurationError, StateError, TaskNotFoundError
from taskloom.protocol import (
    GraphChangedRequest,
    HeartbeatRequest,
    KillRequest,
    ListAgentsRequest,
    PauseRequest,
    ReconfigureRequest,
    ResumeRequest,
    ShutdownRequest,
    SpawnRequest,
    StatusRequest,
)
from taskloom.workspace import Workspace
from tests.helpers.task_builders import make_task


class FakeServer:
    """Control server stand-in that never touches a socket."""

    def __init__(self, socket_path: str = "/tmp/taskloom-test.sock") -> None:
        self.socket_path = Path(socket_path)
        self.started = False
        self.closed = False
        self.polls = 0
        self.read_timeout = 5.0
        self.write_timeout = 5.0

    def start(self) -> None:
        self.started = True

    def poll(self) -> bool:
        self.polls += 1
        return False

    def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def daemon(ctx, clock) -> Daemon:
    return Daemon(ctx, server=FakeServer(), sleep=lambda _: None, clock=clock)


class TestDaemonLock:
    """Tests for the single-instance lock."""

    def test_second_holder_rejected(self, tmp_path) -> None:
        first = DaemonLock(tmp_path / "service" / "daemon.lock")
        second = DaemonLock(tmp_path / "service" / "daemon.lock")
        first.acquire()
        try:
            with pytest.raises(AlreadyRunningError) as exc_info:
                second.acquire()
            assert exc_info.value.pid == os.getpid()
        finally:
            first.release()
        second.acquire()
        second.release()

    def test_records_pid(self, tmp_path) -> None:
        lock = DaemonLock(tmp_path / "daemon.lock")
        lock.acquire()
        assert lock.path.read_text().startswith(f"{os.getpid()}:")
        lock.release()


class TestLifecycle:
    """Tests for start, the main loop and shutdown."""

    def test_start_writes_service_state(self, daemon: Daemon, ctx, workspace: Workspace) -> None:
        daemon.start()
        try:
            assert ctx.state is DaemonState.RUNNING
            assert daemon.server.started
            state = read_service_state(workspace)
            assert state.pid == os.getpid()
            assert state.socket_path == "/tmp/taskloom-test.sock"
        finally:
            daemon.shutdown()

    def test_second_daemon_rejected(self, daemon: Daemon, ctx) -> None:
        daemon.start()
        try:
            other = Daemon(ctx, server=FakeServer())
            with pytest.raises(AlreadyRunningError):
                other.start()
            assert not other.server.started
        finally:
            daemon.shutdown()

    def test_start_requires_graph(self, tmp_path, launcher, process) -> None:
        ctx = DaemonContext.create(Workspace(tmp_path), launcher=launcher, process=process)
        with pytest.raises(StateError):
            Daemon(ctx, server=FakeServer()).start()

    def test_shutdown_cleans_up(self, daemon: Daemon, ctx, workspace: Workspace) -> None:
        daemon.start()
        daemon.shutdown()
        assert ctx.state is DaemonState.STOPPED
        assert daemon.server.closed
        assert read_service_state(workspace) is None
        lock = DaemonLock(workspace.daemon_lock_path)
        lock.acquire()
        lock.release()

    def test_shutdown_leaves_agents_running(self, daemon: Daemon, ctx, seed, process) -> None:
        seed(make_task("a"))
        daemon.start()
        daemon.run_tick()
        daemon.shutdown()
        assert ctx.registry_store.load().count_working() == 1
        assert process.signals == []

    def test_shutdown_kills_agents_on_request(self, daemon: Daemon, ctx, seed, process) -> None:
        seed(make_task("a"))
        daemon.start()
        daemon.run_tick()
        daemon.handle_request(ShutdownRequest(kill_agents=True))
        daemon.shutdown()
        assert ctx.registry_store.load().count_working() == 0
        assert ctx.graph_store.load().require("a").status is TaskStatus.OPEN

    def test_serve_forever_ticks_then_idles(self, ctx, seed, clock) -> None:
        seed(make_task("a"))
        sleeps: list[float] = []

        def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 3:
                daemon.request_stop()

        daemon = Daemon(ctx, server=FakeServer(), sleep=fake_sleep, clock=clock)
        daemon.start()
        try:
            daemon.serve_forever()
        finally:
            daemon.shutdown()

        assert ctx.tick_count == 1
        assert sleeps == [0.1, 0.1, 0.1]
        assert ctx.graph_store.load().require("a").status is TaskStatus.IN_PROGRESS

    def test_idle_sleep_follows_reconfigure(self, ctx, clock) -> None:
        sleeps: list[float] = []

        def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 1:
                daemon.handle_request(ReconfigureRequest(config={"control": {"idle_sleep_ms": 20}}))
                daemon.ctx.graph_changed = False
            elif len(sleeps) == 3:
                daemon.request_stop()

        daemon = Daemon(ctx, server=FakeServer(), sleep=fake_sleep, clock=clock)
        daemon.start()
        try:
            daemon.serve_forever()
        finally:
            daemon.shutdown()

        assert sleeps == [0.1, 0.02, 0.02]


class TestTickDue:
    """Tests for Daemon.tick_due."""

    def test_first_tick_due(self, daemon: Daemon) -> None:
        assert daemon.tick_due()

    def test_poll_interval(self, daemon: Daemon, ctx, clock: FakeClock) -> None:
        daemon.run_tick()
        assert not daemon.tick_due()
        clock.now += ctx.config.coordinator.poll_interval
        assert daemon.tick_due()

    def test_graph_changed(self, daemon: Daemon) -> None:
        daemon.run_tick()
        daemon.handle_request(GraphChangedRequest())
        assert daemon.tick_due()

    def test_failed_tick_does_not_stop_loop(self, daemon: Daemon, ctx) -> None:
        ctx.registry_store.path.parent.mkdir(parents=True, exist_ok=True)
        ctx.registry_store.path.write_text("garbage")
        daemon.run_tick()
        assert not daemon.tick_due()

    def test_unexpected_tick_error_does_not_stop_loop(self, daemon: Daemon) -> None:
        """Errors outside the taskloom hierarchy are logged, not raised."""
        with patch.object(daemon.coordinator, "tick", side_effect=NotADirectoryError("agents")):
            daemon.run_tick()
        assert not daemon.tick_due()


class TestHandlers:
    """Tests for control request handlers."""

    def test_spawn(self, daemon: Daemon, ctx, seed) -> None:
        seed(make_task("a"))
        response = daemon.handle_request(SpawnRequest(task_id="a"))
        assert response.ok
        assert response.data["agent_id"] == "agent-1"
        assert ctx.graph_store.load().require("a").assigned == "agent-1"

    def test_spawn_unknown_task_raises(self, daemon: Daemon) -> None:
        with pytest.raises(TaskNotFoundError):
            daemon.handle_request(SpawnRequest(task_id="ghost"))

    def test_list_agents(self, daemon: Daemon, seed, process) -> None:
        seed(make_task("a"), make_task("b"))
        daemon.handle_request(SpawnRequest(task_id="a"))
        daemon.handle_request(SpawnRequest(task_id="b"))
        process.exit(1000)

        agents = daemon.handle_request(ListAgentsRequest()).data["agents"]
        assert [(a["id"], a["alive"]) for a in agents] == [("agent-1", False), ("agent-2", True)]
        filtered = daemon.handle_request(ListAgentsRequest(task_id="b")).data["agents"]
        assert [a["id"] for a in filtered] == ["agent-2"]

    def test_list_agents_bad_status(self, daemon: Daemon) -> None:
        response = daemon.handle_request(ListAgentsRequest(status="zombie"))
        assert not response.ok

    def test_kill(self, daemon: Daemon, ctx, seed) -> None:
        seed(make_task("a"))
        daemon.handle_request(SpawnRequest(task_id="a"))
        ctx.graph_changed = False

        response = daemon.handle_request(KillRequest(agent_id="agent-1"))

        assert response.data["killed"][0]["released"] is True
        assert ctx.graph_changed
        assert ctx.registry_store.load().require("agent-1").status is AgentStatus.STOPPED

    def test_kill_requires_target(self, daemon: Daemon) -> None:
        assert not daemon.handle_request(KillRequest()).ok

    def test_heartbeat(self, daemon: Daemon, seed) -> None:
        seed(make_task("a"))
        daemon.handle_request(SpawnRequest(task_id="a"))
        response = daemon.handle_request(HeartbeatRequest(agent_id="agent-1"))
        assert response.data["agent_id"] == "agent-1"

    def test_status(self, daemon: Daemon, seed) -> None:
        seed(make_task("a"))
        daemon.start()
        try:
            data = daemon.handle_request(StatusRequest()).data
        finally:
            daemon.shutdown()
        assert data["running"] is True
        assert data["state"] == "running"
        assert data["tasks"]["open"] == 1

    def test_pause_and_resume(self, daemon: Daemon, ctx, workspace: Workspace) -> None:
        daemon.start()
        try:
            daemon.handle_request(PauseRequest())
            assert ctx.paused
            assert read_service_state(workspace).paused
            assert ctx.state is DaemonState.PAUSED

            ctx.graph_changed = False
            daemon.handle_request(ResumeRequest())
            assert not ctx.paused
            assert ctx.graph_changed
            assert ctx.state is DaemonState.RUNNING
        finally:
            daemon.shutdown()

    def test_reconfigure(self, daemon: Daemon, ctx, workspace: Workspace) -> None:
        response = daemon.handle_request(
            ReconfigureRequest(config={"coordinator": {"max_agents": 1}}, persist=True)
        )
        assert response.data["persisted"] is True
        assert ctx.config.coordinator.max_agents == 1
        assert workspace.load_config().coordinator.max_agents == 1

    def test_reconfigure_in_memory_only(self, daemon: Daemon, ctx, workspace: Workspace) -> None:
        daemon.handle_request(ReconfigureRequest(config={"coordinator": {"max_agents": 2}}))
        assert ctx.config.coordinator.max_agents == 2
        assert not workspace.config_path.exists()

    def test_reconfigure_applies_control_timeouts(self, daemon: Daemon) -> None:
        daemon.handle_request(
            ReconfigureRequest(config={"control": {"read_timeout_seconds": 1.0, "write_timeout_seconds": 2.0}})
        )
        assert daemon.server.read_timeout == 1.0
        assert daemon.server.write_timeout == 2.0

    def test_reconfigure_rejects_socket_path(self, daemon: Daemon, ctx) -> None:
        with pytest.raises(ConfigurationError, match="socket_path"):
            daemon.handle_request(ReconfigureRequest(config={"control": {"socket_path": "/tmp/other.sock"}}))
        assert ctx.config.control.socket_path is None

    def test_reconfigure_invalid(self, daemon: Daemon, ctx) -> None:
        with pytest.raises(ConfigurationError):
            daemon.handle_request(ReconfigureRequest(config={"coordinator": {"max_agents": 0}}))
        assert ctx.config.coordinator.max_agents == 4

    def test_shutdown_request(self, daemon: Daemon) -> None:
        response = daemon.handle_request(ShutdownRequest())
        assert response.data["stopping"] is True
        assert daemon._stop_requested


class TestReadServiceState:
    """Tests for read_service_state."""

    def test_unreadable(self, workspace: Workspace) -> None:
        workspace.service_state_path.parent.mkdir(parents=True, exist_ok=True)
        workspace.service_state_path.write_text(json.dumps({"pid": "x"}))
        assert read_service_state(workspace) is None
