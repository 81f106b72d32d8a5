"""Taskloom configuration management using Pydantic."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, ValidationError

from taskloom.constants import (
    CONFIG_FILE,
    DEFAULT_EXECUTOR,
    DEFAULT_IDLE_SLEEP_MS,
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_MAX_AGENTS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_SOCKET_TIMEOUT_SECONDS,
    LOGS_DIR,
)
from taskloom.exceptions import ConfigurationError


class CoordinatorConfig(BaseModel):
    """Dispatch and supervision settings."""

    max_agents: int = Field(default=DEFAULT_MAX_AGENTS, ge=1, le=64)
    poll_interval: int = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, ge=1, le=86400)
    executor: str = DEFAULT_EXECUTOR
    model: str | None = None
    heartbeat_timeout_seconds: int = Field(
        default=0,
        ge=0,
        description="Heartbeat staleness threshold; 0 disables the check",
    )
    kill_grace_seconds: float = Field(default=DEFAULT_KILL_GRACE_SECONDS, ge=0, le=300)
    spawn_backoff_strategy: str = Field(
        default="exponential", pattern="^(exponential|linear|fixed)$"
    )
    spawn_backoff_base_seconds: int = Field(default=10, ge=0, le=3600)
    spawn_backoff_max_seconds: int = Field(default=600, ge=0, le=86400)


class GatingConfig(BaseModel):
    """Graph transformation passes run on each tick."""

    auto_assign: bool = False
    auto_evaluate: bool = False
    assigner_executor: str | None = None
    evaluator_executor: str | None = None


class ControlConfig(BaseModel):
    """Control socket settings."""

    socket_path: str | None = None
    read_timeout_seconds: float = Field(default=DEFAULT_SOCKET_TIMEOUT_SECONDS, gt=0, le=60)
    write_timeout_seconds: float = Field(default=DEFAULT_SOCKET_TIMEOUT_SECONDS, gt=0, le=60)
    idle_sleep_ms: int = Field(default=DEFAULT_IDLE_SLEEP_MS, ge=1, le=5000)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="info", pattern="^(debug|info|warn|error)$")
    directory: str = LOGS_DIR
    max_log_size_mb: int = Field(default=10, ge=1, le=1000)
    backup_count: int = Field(default=5, ge=0, le=100)
    structured_output: bool = True


class TaskloomConfig(BaseModel):
    """Complete Taskloom configuration."""

    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    gating: GatingConfig = Field(default_factory=GatingConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> TaskloomConfig:
        """Load configuration from YAML file.

        Args:
            config_path: Path to config file. Defaults to .taskloom/config.yaml

        Returns:
            TaskloomConfig instance

        Raises:
            ConfigurationError: If the file is unreadable or invalid
        """
        config_path = Path(CONFIG_FILE) if config_path is None else Path(config_path)

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Cannot read config file {config_path}", {"error": str(e)}
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskloomConfig:
        """Create configuration from dictionary, raising ConfigurationError on bad values."""
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError("Invalid configuration", {"errors": e.errors()}) from e

    def save(self, config_path: str | Path | None = None) -> None:
        """Save configuration to YAML file.

        Args:
            config_path: Path to save config. Defaults to .taskloom/config.yaml
        """
        config_path = Path(CONFIG_FILE) if config_path is None else Path(config_path)

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()

    def merged(self, partial: dict[str, Any]) -> TaskloomConfig:
        """Return a new config with ``partial`` deep-merged over this one.

        Unknown sections or keys are rejected so that a typo in a
        reconfigure request does not silently do nothing.

        Args:
            partial: Nested mapping of sections to override

        Returns:
            Validated TaskloomConfig

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        base = self.to_dict()
        _check_known_keys(partial, base, path="")
        return TaskloomConfig.from_dict(deep_merge(base, partial))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _check_known_keys(partial: dict[str, Any], base: dict[str, Any], path: str) -> None:
    for key, value in partial.items():
        dotted = f"{path}{key}"
        if key not in base:
            raise ConfigurationError(f"Unknown configuration key: {dotted}")
        if isinstance(value, dict) and isinstance(base[key], dict):
            _check_known_keys(value, base[key], path=f"{dotted}.")
