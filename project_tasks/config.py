"""Configuration loading: user-level settings and per-project overrides."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Tuple
import os

from core.config_loader import (
    FILE_LOADERS,
    PARSE_ERRORS,
    find_config_file,
    load_config_file,
    merge_mappings,
    normalize_string_mapping,
)

if TYPE_CHECKING:  # pragma: no cover
    from .context import Console


PROJECT_CONFIG_STEM = ".project-tasks"
PROJECT_CONFIG_NAMES: Tuple[str, ...] = tuple(f"{PROJECT_CONFIG_STEM}{suffix}" for suffix in FILE_LOADERS)

OUTPUT_MODES = ("terminal", "log")
LOG_LEVELS = ("none", "error", "warn", "info", "debug")

CONFIG_DIR_ENV = "PROJECT_TASKS_CONFIG_DIR"
SESSION_FILE_ENV = "PROJECT_TASKS_SESSION_FILE"


@dataclass(slots=True)
class GlobalConfig:
    log_level: str = "info"
    output_mode: str = "terminal"
    session_file: str | None = None
    backends: Dict[str, Mapping[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        global_section = data.get("global", {}) if isinstance(data, Mapping) else {}
        if not isinstance(global_section, Mapping):
            raise TypeError("[global] must be a table")

        log_level = str(global_section.get("log_level", "info")).lower()
        if log_level not in LOG_LEVELS:
            raise ValueError(f"global.log_level must be one of: {', '.join(LOG_LEVELS)}")
        output_mode = str(global_section.get("output_mode", "terminal")).lower()
        if output_mode not in OUTPUT_MODES:
            raise ValueError(f"global.output_mode must be one of: {', '.join(OUTPUT_MODES)}")

        backends_section = data.get("backends", {})
        if not isinstance(backends_section, Mapping):
            raise TypeError("[backends] must be a table")
        backends: Dict[str, Mapping[str, Any]] = {}
        for name, value in backends_section.items():
            if not isinstance(value, Mapping):
                raise TypeError(f"backends.{name} must be a table")
            backends[str(name)] = value

        session_file = global_section.get("session_file")
        return cls(
            log_level=log_level,
            output_mode=output_mode,
            session_file=str(session_file) if session_file else None,
            backends=backends,
        )


@dataclass(slots=True)
class TargetSpec:
    path: str | None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_value(cls, name: str, value: Any) -> "TargetSpec":
        if isinstance(value, str):
            return cls(path=value)
        if not isinstance(value, Mapping):
            raise TypeError(f"targets.{name} must be a path string or a mapping")
        path = value.get("path")
        args = value.get("args")
        if args is not None and (isinstance(args, (str, bytes)) or not isinstance(args, Iterable)):
            raise TypeError(f"targets.{name}.args must be a list of strings")
        return cls(
            path=str(path) if path else None,
            args=[str(arg) for arg in args or []],
            env=normalize_string_mapping(value.get("env"), field_name=f"targets.{name}.env"),
        )


@dataclass(slots=True)
class ProjectConfig:
    backends: Dict[str, Mapping[str, Any]] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    targets: Dict[str, TargetSpec] = field(default_factory=dict)
    path: Path | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, path: Path | None = None) -> "ProjectConfig":
        backends_section = data.get("backends", {})
        if not isinstance(backends_section, Mapping):
            raise TypeError("backends must be a mapping")
        backends: Dict[str, Mapping[str, Any]] = {}
        for name, value in backends_section.items():
            if not isinstance(value, Mapping):
                raise TypeError(f"backends.{name} must be a mapping")
            backends[str(name)] = value

        variables = data.get("variables", {})
        if not isinstance(variables, Mapping):
            raise TypeError("variables must be a mapping")

        targets_section = data.get("targets", {})
        if not isinstance(targets_section, Mapping):
            raise TypeError("targets must be a mapping")

        return cls(
            backends=backends,
            env=normalize_string_mapping(data.get("env"), field_name="env"),
            variables={str(key): value for key, value in variables.items()},
            targets={str(name): TargetSpec.from_value(str(name), value) for name, value in targets_section.items()},
            path=path,
        )


def find_project_config(root: Path) -> Path | None:
    return find_config_file(Path(root), PROJECT_CONFIG_STEM)


def load_project_config(root: Path, console: "Console | None" = None) -> ProjectConfig:
    """Load the project override document; malformed documents are reported and ignored."""

    path = find_project_config(root)
    if path is None:
        return ProjectConfig()
    try:
        return ProjectConfig.from_mapping(load_config_file(path), path=path)
    except (OSError, ValueError, *PARSE_ERRORS) as exc:
        if console is not None:
            console.warn(f"Invalid {path.name}: {exc}")
        return ProjectConfig()


def _split_config_values(values: Iterable[str]) -> List[str]:
    parts: List[str] = []
    separator = os.pathsep
    for value in values:
        if not value:
            continue
        for segment in value.split(separator):
            trimmed = segment.strip()
            if trimmed:
                parts.append(trimmed)
    return parts


def default_config_dirs(environ: Mapping[str, str] | None = None) -> List[Path]:
    env = os.environ if environ is None else environ
    config_home = env.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    directories: List[Path] = [Path(config_home) / "project-tasks"]
    for entry in _split_config_values([env.get(CONFIG_DIR_ENV, "")]):
        directories.append(Path(entry).expanduser())

    ordered: List[Path] = []
    for path in directories:
        if path in ordered:
            ordered.remove(path)
        ordered.append(path)
    return ordered


def load_global_config(directories: Iterable[Path] | None = None) -> GlobalConfig:
    """Merge ``config.*`` from each directory in order; later directories win."""

    merged: Dict[str, Any] = {}
    for directory in directories if directories is not None else default_config_dirs():
        if not directory.is_dir():
            continue
        path = find_config_file(directory, "config")
        if path is None:
            continue
        merged = merge_mappings(merged, load_config_file(path))
    return GlobalConfig.from_mapping(merged)


def default_session_path(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    override = env.get(SESSION_FILE_ENV)
    if override:
        return Path(override).expanduser()
    data_home = env.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(data_home) / "project-tasks" / "project-tasks-session.json"


def resolve_session_path(config: GlobalConfig, environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    if env.get(SESSION_FILE_ENV):
        return default_session_path(env)
    if config.session_file:
        return Path(config.session_file).expanduser()
    return default_session_path(env)


__all__ = [
    "GlobalConfig",
    "LOG_LEVELS",
    "OUTPUT_MODES",
    "PROJECT_CONFIG_NAMES",
    "ProjectConfig",
    "TargetSpec",
    "default_config_dirs",
    "default_session_path",
    "find_project_config",
    "load_global_config",
    "load_project_config",
    "resolve_session_path",
]
