"""Launcher data types: what to spawn and how the spawn went."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

__all__ = [
    "LaunchSpec",
    "SpawnResult",
]


@dataclass
class LaunchSpec:
    """A fully resolved command for one agent."""

    agent_id: str
    task_id: str
    command: list[str]
    executor: str
    env: dict[str, str] = field(default_factory=dict)
    working_dir: Path | None = None
    output_file: Path | None = None
    timeout_seconds: int | None = None


@dataclass
class SpawnResult:
    """Result of spawning an agent."""

    success: bool
    agent_id: str
    pid: int | None = None
    error: str | None = None
