"""Durable state: file locking, the graph store and the agent registry."""

from taskloom.state.graph_store import GraphStore
from taskloom.state.persistence import FileLock, atomic_write
from taskloom.state.registry import AgentRecord, AgentRegistry, RegistryStore

__all__ = [
    "AgentRecord",
    "AgentRegistry",
    "FileLock",
    "GraphStore",
    "RegistryStore",
    "atomic_write",
]
