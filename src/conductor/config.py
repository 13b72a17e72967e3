from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentName = Literal["claude", "codex"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

DEFAULT_CONFIG_FILE = "conductor.toml"


class ConfigError(ValueError):
    """Raised when conductor.toml contains an unusable value."""


@dataclass(slots=True)
class BackendConfig:
    agent: AgentName = "claude"
    binary: str = ""
    timeout_seconds: float = 300.0

    @property
    def executable(self) -> str:
        return self.binary or self.agent


@dataclass(slots=True)
class ExecutorConfig:
    max_retries: int = 3
    max_parallel_tasks: int = 4
    poll_interval_seconds: float = 5.0


@dataclass(slots=True)
class ActivityConfig:
    inactivity_threshold_seconds: float = 120.0
    min_runtime_seconds: float = 30.0


@dataclass(slots=True)
class StateConfig:
    directory: str = ".conductor/state"
    event_history: int = 200


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class ConductorConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        try:
            config = cls(
                backend=BackendConfig(**data.get("backend", {})),
                executor=ExecutorConfig(**data.get("executor", {})),
                activity=ActivityConfig(**data.get("activity", {})),
                state=StateConfig(**data.get("state", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
            config.validate()
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        return config

    def validate(self) -> None:
        numbers = {
            "backend.timeout_seconds": self.backend.timeout_seconds,
            "executor.max_retries": self.executor.max_retries,
            "executor.max_parallel_tasks": self.executor.max_parallel_tasks,
            "executor.poll_interval_seconds": self.executor.poll_interval_seconds,
            "activity.inactivity_threshold_seconds": self.activity.inactivity_threshold_seconds,
            "activity.min_runtime_seconds": self.activity.min_runtime_seconds,
            "state.event_history": self.state.event_history,
        }
        for key, value in numbers.items():
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ConfigError(f"{key} must be a number, got {value!r}")
        for key in ("backend.binary", "state.directory"):
            section, name = key.split(".")
            if not isinstance(getattr(getattr(self, section), name), str):
                raise ConfigError(f"{key} must be a string")
        if self.backend.agent not in ("claude", "codex"):
            raise ConfigError(f"Unknown backend agent: {self.backend.agent!r}")
        if self.backend.timeout_seconds <= 0:
            raise ConfigError("backend.timeout_seconds must be positive")
        if self.executor.max_retries < 1:
            raise ConfigError("executor.max_retries must be at least 1")
        if self.executor.max_parallel_tasks < 1:
            raise ConfigError("executor.max_parallel_tasks must be at least 1")
        if self.executor.poll_interval_seconds <= 0:
            raise ConfigError("executor.poll_interval_seconds must be positive")
        if self.activity.inactivity_threshold_seconds <= 0:
            raise ConfigError("activity.inactivity_threshold_seconds must be positive")
        if self.activity.min_runtime_seconds < 0:
            raise ConfigError("activity.min_runtime_seconds must not be negative")
        if self.state.event_history < 1:
            raise ConfigError("state.event_history must be at least 1")
        if str(self.logging.level).upper() not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ConfigError(f"Unknown logging level: {self.logging.level!r}")

    def to_dict(self) -> dict:
        return {
            "backend": {
                "agent": self.backend.agent,
                "binary": self.backend.binary,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "executor": {
                "max_retries": self.executor.max_retries,
                "max_parallel_tasks": self.executor.max_parallel_tasks,
                "poll_interval_seconds": self.executor.poll_interval_seconds,
            },
            "activity": {
                "inactivity_threshold_seconds": self.activity.inactivity_threshold_seconds,
                "min_runtime_seconds": self.activity.min_runtime_seconds,
            },
            "state": {
                "directory": self.state.directory,
                "event_history": self.state.event_history,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("backend", "executor", "activity", "state", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return ConductorConfig.from_dict(data)


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
