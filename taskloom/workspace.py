"""Resolved paths and stores for one working directory."""

from __future__ import annotations

import hashlib
from pathlib import Path

from taskloom.config import TaskloomConfig
from taskloom.constants import (
    AGENTS_DIR,
    CONFIG_FILE,
    DAEMON_LOCK_FILE,
    GRAPH_FILE,
    REGISTRY_FILE,
    SERVICE_STATE_FILE,
    SOCKET_DIR,
    TASKLOOM_DIR,
)
from taskloom.state.graph_store import GraphStore
from taskloom.state.registry import RegistryStore


class Workspace:
    """A directory managed by taskloom (the parent of ``.taskloom/``)."""

    def __init__(self, root: str | Path = ".") -> None:
        self.root = Path(root).resolve()
        self._graph_store: GraphStore | None = None
        self._registry_store: RegistryStore | None = None

    @property
    def taskloom_dir(self) -> Path:
        return self.root / TASKLOOM_DIR

    @property
    def graph_path(self) -> Path:
        return self.root / GRAPH_FILE

    @property
    def registry_path(self) -> Path:
        return self.root / REGISTRY_FILE

    @property
    def config_path(self) -> Path:
        return self.root / CONFIG_FILE

    @property
    def service_state_path(self) -> Path:
        return self.root / SERVICE_STATE_FILE

    @property
    def daemon_lock_path(self) -> Path:
        return self.root / DAEMON_LOCK_FILE

    @property
    def agents_dir(self) -> Path:
        return self.root / AGENTS_DIR

    def is_initialized(self) -> bool:
        return self.graph_path.exists()

    def graph_store(self) -> GraphStore:
        if self._graph_store is None:
            self._graph_store = GraphStore(self.graph_path)
        return self._graph_store

    def registry_store(self) -> RegistryStore:
        if self._registry_store is None:
            self._registry_store = RegistryStore(self.registry_path)
        return self._registry_store

    def load_config(self) -> TaskloomConfig:
        return TaskloomConfig.load(self.config_path)

    def socket_path(self, config: TaskloomConfig | None = None) -> Path:
        """Control socket path, derived from the working directory unless configured."""
        if config is not None and config.control.socket_path:
            return Path(config.control.socket_path)
        digest = hashlib.sha1(str(self.root).encode()).hexdigest()[:12]
        return Path(SOCKET_DIR) / f"taskloom-{digest}.sock"
