"""Configuration helpers for the task engine."""

from __future__ import annotations

import importlib
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml

from .errors import ConfigError

DEFAULT_ALLOWED_COMMANDS = [
    "ls",
    "cat",
    "head",
    "tail",
    "grep",
    "find",
    "wc",
    "echo",
    "mkdir",
    "git",
    "python",
    "pytest",
    "pip",
    "npm",
    "cargo",
]

ALL_CAPABILITIES = ["filesystem-read", "filesystem-write", "process-execution"]

ENV_PREFIX = "TASKWEAVE_"


def _as_int(name: str, value: Any, *, minimum: int = 0) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{name}' must be an integer, got {value!r}") from exc
    if number < minimum:
        raise ConfigError(f"'{name}' must be >= {minimum}, got {number}")
    return number


def _as_float(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{name}' must be a number, got {value!r}") from exc
    if number <= 0:
        raise ConfigError(f"'{name}' must be positive, got {number}")
    return number


def _as_str_list(name: str, value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"'{name}' must be a list of strings")
    return [str(item) for item in value]


@dataclass
class EngineSpec:
    """Scheduling and decision-loop limits."""

    max_concurrent_subtasks: int = 4
    default_timeout_seconds: float = 300.0
    max_iterations: int = 12
    max_tool_retries: int = 3
    decision_timeout_seconds: float = 120.0
    tool_timeout_seconds: float = 60.0
    context_window: int = 20
    confirm_timeout_seconds: float = 300.0
    save_timeout_seconds: float = 30.0

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "EngineSpec":
        if not data:
            return cls()
        defaults = cls()
        return cls(
            max_concurrent_subtasks=_as_int(
                "max_concurrent_subtasks",
                data.get("max_concurrent_subtasks", defaults.max_concurrent_subtasks),
                minimum=1,
            ),
            default_timeout_seconds=_as_float(
                "default_timeout_seconds", data.get("default_timeout_seconds", defaults.default_timeout_seconds)
            ),
            max_iterations=_as_int("max_iterations", data.get("max_iterations", defaults.max_iterations), minimum=1),
            max_tool_retries=_as_int("max_tool_retries", data.get("max_tool_retries", defaults.max_tool_retries)),
            decision_timeout_seconds=_as_float(
                "decision_timeout_seconds",
                data.get("decision_timeout_seconds", defaults.decision_timeout_seconds),
            ),
            tool_timeout_seconds=_as_float(
                "tool_timeout_seconds", data.get("tool_timeout_seconds", defaults.tool_timeout_seconds)
            ),
            context_window=_as_int("context_window", data.get("context_window", defaults.context_window), minimum=1),
            confirm_timeout_seconds=_as_float(
                "confirm_timeout_seconds", data.get("confirm_timeout_seconds", defaults.confirm_timeout_seconds)
            ),
            save_timeout_seconds=_as_float(
                "save_timeout_seconds", data.get("save_timeout_seconds", defaults.save_timeout_seconds)
            ),
        )


@dataclass
class SecuritySpec:
    """Sandbox and process-execution limits."""

    sandbox_root: str = "."
    allowed_commands: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    denied_commands: List[str] = field(default_factory=lambda: ["sudo", "su", "shutdown", "reboot"])
    command_timeout_seconds: float = 30.0
    max_output_bytes: int = 64 * 1024
    allowed_capabilities: List[str] = field(default_factory=lambda: list(ALL_CAPABILITIES))

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "SecuritySpec":
        if not data:
            return cls()
        defaults = cls()
        capabilities = _as_str_list(
            "allowed_capabilities", data.get("allowed_capabilities", defaults.allowed_capabilities)
        )
        unknown = [cap for cap in capabilities if cap not in ALL_CAPABILITIES]
        if unknown:
            raise ConfigError(f"Unknown capabilities: {', '.join(unknown)}")
        return cls(
            sandbox_root=str(data.get("sandbox_root", defaults.sandbox_root)),
            allowed_commands=_as_str_list("allowed_commands", data.get("allowed_commands", defaults.allowed_commands)),
            denied_commands=_as_str_list("denied_commands", data.get("denied_commands", defaults.denied_commands)),
            command_timeout_seconds=_as_float(
                "command_timeout_seconds", data.get("command_timeout_seconds", defaults.command_timeout_seconds)
            ),
            max_output_bytes=_as_int(
                "max_output_bytes", data.get("max_output_bytes", defaults.max_output_bytes), minimum=1
            ),
            allowed_capabilities=capabilities,
        )


@dataclass
class ComponentSpec:
    """A collaborator instantiated from a ``module:qualname`` path."""

    type: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]], *, key: str = "type") -> "ComponentSpec":
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigError("Component configuration must be a mapping")
        return cls(type=data.get(key), params=dict(data.get("params", {})))


@dataclass
class PersistenceSpec:
    """Where task snapshots are saved between sessions."""

    type: str = "memory"
    url: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "PersistenceSpec":
        if not data:
            return cls()
        kind = str(data.get("type", "memory"))
        if kind not in {"memory", "postgres", "none"}:
            raise ConfigError(f"Unsupported persistence type '{kind}'")
        url = data.get("url")
        if kind == "postgres" and not url:
            raise ConfigError("Postgres persistence requires a 'url'")
        return cls(type=kind, url=url)


@dataclass
class ProjectConfig:
    """Representation of the YAML configuration."""

    name: str = "taskweave"
    description: Optional[str] = None
    engine: EngineSpec = field(default_factory=EngineSpec)
    security: SecuritySpec = field(default_factory=SecuritySpec)
    llm: ComponentSpec = field(default_factory=ComponentSpec)
    retriever: ComponentSpec = field(default_factory=ComponentSpec)
    persistence: PersistenceSpec = field(default_factory=PersistenceSpec)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, name: Optional[str] = None) -> "ProjectConfig":
        if not isinstance(data, MutableMapping):
            raise ConfigError("Configuration root must be a mapping")
        return cls(
            name=str(data.get("name", name or "taskweave")),
            description=data.get("description"),
            engine=EngineSpec.from_mapping(data.get("engine")),
            security=SecuritySpec.from_mapping(data.get("security")),
            llm=ComponentSpec.from_mapping(data.get("llm"), key="provider"),
            retriever=ComponentSpec.from_mapping(data.get("retriever")),
            persistence=PersistenceSpec.from_mapping(data.get("persistence")),
        )

    @classmethod
    def from_yaml(cls, text: str, *, name: Optional[str] = None) -> "ProjectConfig":
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Configuration is not valid YAML: {exc}") from exc
        return cls.from_mapping(data or {}, name=name)

    @classmethod
    def from_file(cls, path: str | pathlib.Path) -> "ProjectConfig":
        path = pathlib.Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file {path} not found")
        return cls.from_yaml(path.read_text(), name=path.stem)

    def apply_environment(self, environ: Optional[Mapping[str, str]] = None) -> "ProjectConfig":
        """Override selected values from ``TASKWEAVE_*`` environment variables."""

        env = os.environ if environ is None else environ
        value = env.get(f"{ENV_PREFIX}MAX_CONCURRENT_SUBTASKS")
        if value:
            self.engine.max_concurrent_subtasks = _as_int("max_concurrent_subtasks", value, minimum=1)
        value = env.get(f"{ENV_PREFIX}DEFAULT_TIMEOUT_SECONDS")
        if value:
            self.engine.default_timeout_seconds = _as_float("default_timeout_seconds", value)
        value = env.get(f"{ENV_PREFIX}SANDBOX_ROOT")
        if value:
            self.security.sandbox_root = value
        value = env.get(f"{ENV_PREFIX}DATABASE_URL")
        if value:
            self.persistence = PersistenceSpec(type="postgres", url=value)
        return self


def import_string(path: str) -> Any:
    """Return attribute from module specified by path "module:qualname"."""

    if ":" not in path:
        raise ConfigError(f"Import path '{path}' must use module:qualname format")
    module_path, attr = path.split(":", 1)
    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        raise ConfigError(f"Cannot import module '{module_path}': {exc}") from exc
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ConfigError(f"Module '{module_path}' has no attribute '{attr}'") from exc


def instantiate_from_path(path: str, *args: Any, **kwargs: Any) -> Any:
    """Import and instantiate a class given its dotted path."""

    cls = import_string(path)
    return cls(*args, **kwargs)
