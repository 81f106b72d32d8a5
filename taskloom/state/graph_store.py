"""Line-oriented graph store: one JSON task record per line."""

from __future__ import annotations

import contextlib
import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from taskloom.constants import GRAPH_FILE
from taskloom.exceptions import GraphParseError, LoopEdgeError, StateError, TaskloomError
from taskloom.graph import TaskGraph
from taskloom.logging import get_logger
from taskloom.models import Task
from taskloom.state.persistence import FileLock, atomic_write

logger = get_logger("state.graph")

TASK_KIND = "task"


class GraphStore:
    """Loads and saves the task graph under an exclusive single-writer lock.

    Records of kinds other than ``task`` are carried through unchanged.
    """

    def __init__(self, path: str | Path | None = None, lock: FileLock | None = None) -> None:
        self.path = Path(path or GRAPH_FILE)
        self.lock = lock or FileLock(self.path.with_name(f".{self.path.name}.lock"))
        self._passthrough: list[dict[str, Any]] = []

    def exists(self) -> bool:
        return self.path.exists()

    def initialize(self) -> bool:
        """Create an empty graph file. Returns False if one already exists."""
        if self.exists():
            return False
        atomic_write(self.path, "")
        return True

    def load(self) -> TaskGraph:
        """Read the graph without taking the lock.

        Raises:
            StateError: If the graph file does not exist
            GraphParseError: If any record is malformed
        """
        if not self.exists():
            raise StateError(f"No task graph at {self.path}; run 'taskloom init' first")
        try:
            text = self.path.read_text()
        except OSError as e:
            raise StateError(f"Cannot read {self.path}", {"error": str(e)}) from e
        tasks, passthrough = parse_graph(text, str(self.path))
        self._passthrough = passthrough
        try:
            return TaskGraph(tasks)
        except TaskloomError as e:
            raise GraphParseError(str(e), str(self.path)) from e

    def save(self, graph: TaskGraph) -> None:
        atomic_write(self.path, serialize_graph(graph, self._passthrough))
        logger.debug(f"Saved {len(graph)} tasks to {self.path}")

    @contextlib.contextmanager
    def update(self) -> Iterator[TaskGraph]:
        """Locked read-modify-write. The graph is saved only if the block succeeds."""
        with self.lock.hold():
            graph = self.load()
            yield graph
            self.save(graph)


def parse_graph(text: str, source: str = "<graph>") -> tuple[list[Task], list[dict[str, Any]]]:
    """Parse JSONL graph text into tasks and passthrough records.

    Blank lines and lines starting with ``#`` are skipped.

    Raises:
        GraphParseError: With the 1-based line number of the first bad record
    """
    tasks: list[Task] = []
    passthrough: list[dict[str, Any]] = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise GraphParseError(f"Invalid JSON on line {lineno}: {e.msg}", source, lineno) from e
        if not isinstance(record, dict):
            raise GraphParseError(f"Line {lineno} is not a JSON object", source, lineno)
        kind = record.pop("kind", TASK_KIND)
        if kind != TASK_KIND:
            record["kind"] = kind
            passthrough.append(record)
            continue
        try:
            tasks.append(Task.from_dict(record))
        except KeyError as e:
            raise GraphParseError(f"Line {lineno} is missing field {e}", source, lineno) from e
        except (ValueError, TypeError, LoopEdgeError) as e:
            raise GraphParseError(f"Line {lineno}: {e}", source, lineno) from e
    return tasks, passthrough


def serialize_graph(graph: TaskGraph, passthrough: list[dict[str, Any]] | None = None) -> str:
    lines = [json.dumps({"kind": TASK_KIND, **task.to_dict()}) for task in graph]
    lines.extend(json.dumps(record) for record in passthrough or [])
    return "\n".join(lines) + "\n" if lines else ""
