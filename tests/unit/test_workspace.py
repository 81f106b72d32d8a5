"""Tests for taskloom.workspace module."""

from pathlib import Path

from taskloom.config import TaskloomConfig
from taskloom.workspace import Workspace


class TestPaths:
    """Tests for resolved workspace paths."""

    def test_layout(self, tmp_path) -> None:
        ws = Workspace(tmp_path)
        assert ws.graph_path == tmp_path.resolve() / ".taskloom" / "graph.jsonl"
        assert ws.registry_path == tmp_path.resolve() / ".taskloom" / "service" / "registry.json"
        assert ws.daemon_lock_path.name == "daemon.lock"
        assert ws.agents_dir == ws.taskloom_dir / "agents"

    def test_is_initialized(self, tmp_path) -> None:
        ws = Workspace(tmp_path)
        assert not ws.is_initialized()
        ws.graph_store().initialize()
        assert ws.is_initialized()

    def test_stores_are_cached(self, tmp_path) -> None:
        ws = Workspace(tmp_path)
        assert ws.graph_store() is ws.graph_store()
        assert ws.registry_store() is ws.registry_store()


class TestSocketPath:
    """Tests for control socket path derivation."""

    def test_derived_from_root(self, tmp_path) -> None:
        path = Workspace(tmp_path).socket_path()
        assert path.parent == Path("/tmp")
        assert path.name.startswith("taskloom-") and path.suffix == ".sock"

    def test_stable_per_directory(self, tmp_path) -> None:
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        assert Workspace(tmp_path / "a").socket_path() == Workspace(tmp_path / "a").socket_path()
        assert Workspace(tmp_path / "a").socket_path() != Workspace(tmp_path / "b").socket_path()

    def test_config_override(self, tmp_path) -> None:
        config = TaskloomConfig.from_dict({"control": {"socket_path": "/tmp/custom.sock"}})
        assert Workspace(tmp_path).socket_path(config) == Path("/tmp/custom.sock")

    def test_load_config_defaults_when_missing(self, tmp_path) -> None:
        assert Workspace(tmp_path).load_config() == TaskloomConfig()
