"""Pytest configuration and fixtures for taskloom tests."""

from collections.abc import Callable

import pytest

from taskloom.config import TaskloomConfig
from taskloom.coordinator import Coordinator, DaemonContext
from taskloom.models import Task
from taskloom.workspace import Workspace
from tests.mocks import FakeLauncher, FakeProcessControl


@pytest.fixture
def workspace(tmp_path) -> Workspace:
    """An initialized workspace in a temporary directory."""
    ws = Workspace(tmp_path)
    ws.graph_store().initialize()
    return ws


@pytest.fixture
def config() -> TaskloomConfig:
    return TaskloomConfig()


@pytest.fixture
def process() -> FakeProcessControl:
    return FakeProcessControl()


@pytest.fixture
def launcher(process: FakeProcessControl) -> FakeLauncher:
    return FakeLauncher(process)


@pytest.fixture
def ctx(
    workspace: Workspace,
    config: TaskloomConfig,
    launcher: FakeLauncher,
    process: FakeProcessControl,
) -> DaemonContext:
    """Daemon context wired to fake process control and launcher."""
    return DaemonContext.create(workspace, config, launcher=launcher, process=process)


@pytest.fixture
def coordinator(ctx: DaemonContext) -> Coordinator:
    return Coordinator(ctx)


@pytest.fixture
def seed(workspace: Workspace) -> Callable[..., None]:
    """Add tasks to the workspace graph.

    Usage:
        seed(Task(id="a", title="A", exec="true"))
    """

    def _seed(*tasks: Task) -> None:
        with workspace.graph_store().update() as graph:
            for task in tasks:
                graph.add_task(task)

    return _seed
