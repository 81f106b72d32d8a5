"""Logging for the daemon and CLI.

Daemon records go to ``.taskloom/logs/taskloom.log`` as one JSON object per
line; console lines are colored and prefixed with the component and the
agent/task they concern. Ids passed via ``extra=`` become top-level JSON keys.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILE_NAME = "taskloom.log"

# Record attributes lifted into JSON output when passed via ``extra=``
CONTEXT_FIELDS = ("task_id", "agent_id", "pid", "tick", "executor", "request")

_LEVEL_ALIASES = {"warn": "WARNING"}

# Fields merged into every record written by this process
_log_context: dict[str, Any] = {}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, timestamped in UTC."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        payload: dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            **_log_context,
        }
        payload.update({key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [component:agent:task] message`` with ANSI level colors."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = [str(_log_context["component"])] if "component" in _log_context else []
        tags.extend(str(getattr(record, key)) for key in ("agent_id", "task_id") if hasattr(record, key))
        prefix = f"[{':'.join(tags)}] " if tags else ""
        color = self.COLORS.get(record.levelname, "")
        line = f"{color}{clock} {record.levelname:<8}{self.RESET} {prefix}{record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def set_log_context(component: str | None = None, **fields: Any) -> None:
    """Replace the process-wide log context.

    ``component`` names the process role ("daemon", "cli") on console lines.
    """
    _log_context.clear()
    if component is not None:
        _log_context["component"] = component
    _log_context.update(fields)


def clear_log_context() -> None:
    _log_context.clear()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"taskloom.{name}")


def _parse_level(level: str) -> int:
    name = _LEVEL_ALIASES.get(level.lower(), level.upper())
    return getattr(logging, name, logging.INFO)


def setup_logging(
    level: str = "info",
    log_dir: str | Path | None = None,
    json_output: bool = True,
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """(Re)configure the ``taskloom`` logger tree.

    Existing handlers are closed and replaced, so calling this again (for
    example when the daemon starts after CLI defaults were installed) never
    duplicates output.

    Args:
        level: debug, info, warn or error
        log_dir: Directory for the rotating JSON log; None disables file output
        json_output: Write the JSON file when ``log_dir`` is set
        console_output: Write colored lines to stderr
        max_bytes: Rotation threshold for the JSON file
        backup_count: Rotated files kept
    """
    log_level = _parse_level(level)
    root = logging.getLogger("taskloom")
    root.setLevel(log_level)
    root.propagate = False

    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()

    handlers: list[logging.Handler] = []
    if console_output:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ConsoleFormatter())
        handlers.append(console)
    if log_dir and json_output:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(directory / LOG_FILE_NAME, maxBytes=max_bytes, backupCount=backup_count)
        rotating.setFormatter(JsonFormatter())
        handlers.append(rotating)

    for handler in handlers:
        handler.setLevel(log_level)
        root.addHandler(handler)


class LoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Adapter that stamps a fixed task/agent onto every record."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **(self.extra or {})}
        return msg, kwargs


def get_task_logger(task_id: str, agent_id: str | None = None) -> LoggerAdapter:
    """Logger for events about one task, optionally tied to the agent running it."""
    extra: dict[str, Any] = {"task_id": task_id}
    if agent_id is not None:
        extra["agent_id"] = agent_id
    return LoggerAdapter(get_logger("task"), extra)


# CLI default until the daemon installs file logging
setup_logging(console_output=True, json_output=False)
