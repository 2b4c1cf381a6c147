"""Backend and task definitions (data-driven).

A backend is nothing but data: the marker files that identify a project and
a table of declarative tasks. The dispatcher is the only interpreter of that
data, so adding a backend never means adding a code path.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Tuple
import copy
import shlex

from core.config_loader import merge_mappings, normalize_string_list, normalize_string_mapping


_EMPTY: Mapping[str, Any] = MappingProxyType({})

_TASK_FLAGS: Dict[str, Tuple[str, ...]] = {
    "needs_preset": ("needs_preset",),
    "needs_build_preset": ("needs_build_preset",),
    "needs_target": ("needs_target",),
    "supports_build_target": ("supports_build_target",),
    "args_passthrough": ("args_passthrough",),
    "uses_launcher": ("use_launcher", "use_dap"),
}

KNOWN_TASK_KEYS = frozenset(
    {"cmd", "fallback_cmd", "env", "edit_file", "launch_config", "dap_config"}
    | {alias for aliases in _TASK_FLAGS.values() for alias in aliases}
)


BUILTIN_BACKENDS: Dict[str, Mapping[str, Any]] = {
    "cmake": {
        "markers": ["CMakePresets.json", "CMakeLists.txt"],
        "discovers_targets": True,
        "configure_marker": "CMakeCache.txt",
        "tasks": {
            "configure": {
                # -B keeps the build out of source when a preset lacks binaryDir
                "cmd": ["cmake", "--preset", "${preset}", "-B", "${binary_dir}"],
                "needs_preset": True,
                "fallback_cmd": ["cmake", "-B", "${build_dir}", "-S", "."],
            },
            "build": {
                "cmd": ["cmake", "--build", "--preset", "${build_preset}"],
                "needs_build_preset": True,
                "fallback_cmd": ["cmake", "--build", "${binary_dir}", "${target_flag}", "${build_target}"],
                "supports_build_target": True,
            },
            "run": {
                "cmd": ["${target_path}"],
                "needs_target": True,
                "args_passthrough": True,
            },
            "debug": {
                "cmd": ["${target_path}"],
                "needs_target": True,
                "args_passthrough": True,
                "use_launcher": True,
                "launch_config": {"type": "codelldb", "request": "launch"},
            },
            "test": {
                "cmd": ["ctest", "--preset", "${preset}"],
                "needs_preset": True,
                "fallback_cmd": ["ctest", "--test-dir", "${binary_dir}"],
            },
            "package": {
                "cmd": ["cmake", "--build", "--preset", "${build_preset}", "--target", "package"],
                "needs_build_preset": True,
                "fallback_cmd": ["cmake", "--build", "${binary_dir}", "--target", "package"],
            },
            "clean": {
                "cmd": ["rm", "-rf", "${binary_dir}"],
                "needs_preset": True,
                "fallback_cmd": ["rm", "-rf", "${build_dir}"],
            },
            "edit": {
                "edit_file": "${project_config}",
            },
        },
        "variables": {
            "build_dir": "build",
        },
    },
    "python": {
        "markers": ["pyproject.toml"],
        "tasks": {
            "run": {
                "cmd": ["uv", "run", "${entry_point}"],
                "args_passthrough": True,
            },
            "debug": {
                "cmd": [
                    "uv", "run", "python", "-m", "debugpy",
                    "--listen", "5678", "--wait-for-client", "${entry_point}",
                ],
                "args_passthrough": True,
                "use_launcher": True,
                "launch_config": {
                    "type": "python",
                    "request": "attach",
                    "connect": {"host": "127.0.0.1", "port": 5678},
                },
            },
            "test": {
                "cmd": ["uv", "run", "pytest"],
                "args_passthrough": True,
            },
            "package": {
                "cmd": ["uv", "build"],
            },
            "edit": {
                "edit_file": "${project_config}",
            },
        },
        "variables": {
            "entry_point": "src/main.py",
        },
    },
}


def _command_template(value: Any, *, field_name: str) -> Tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return tuple(shlex.split(value))
    if isinstance(value, Sequence):
        parts: List[str] = []
        for item in value:
            if not isinstance(item, str):
                raise TypeError(f"{field_name} entries must be strings")
            parts.append(item)
        return tuple(parts)
    raise TypeError(f"{field_name} must be a string or sequence of strings")


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({str(key): _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Return a mutable deep copy of a frozen mapping/tuple structure."""

    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class Task:
    name: str
    cmd: Tuple[str, ...] | None = None
    fallback_cmd: Tuple[str, ...] | None = None
    needs_preset: bool = False
    needs_build_preset: bool = False
    needs_target: bool = False
    supports_build_target: bool = False
    args_passthrough: bool = False
    uses_launcher: bool = False
    launch_config: Mapping[str, Any] | None = None
    env: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    edit_file: str | None = None

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "Task":
        if not isinstance(data, Mapping):
            raise TypeError(f"Task '{name}' must be a mapping")
        label = f"tasks.{name}"

        flags: Dict[str, bool] = {}
        for attribute, aliases in _TASK_FLAGS.items():
            flags[attribute] = any(bool(data.get(alias, False)) for alias in aliases)

        launch_config = data.get("launch_config", data.get("dap_config"))
        if launch_config is not None and not isinstance(launch_config, Mapping):
            raise TypeError(f"{label}.launch_config must be a mapping")

        edit_file = data.get("edit_file")
        if edit_file is not None and not isinstance(edit_file, str):
            raise TypeError(f"{label}.edit_file must be a string")

        cmd = _command_template(data.get("cmd"), field_name=f"{label}.cmd")
        if not cmd and not edit_file:
            raise ValueError(f"Task '{name}' must define 'cmd' or 'edit_file'")

        return cls(
            name=name,
            cmd=cmd,
            fallback_cmd=_command_template(data.get("fallback_cmd"), field_name=f"{label}.fallback_cmd"),
            launch_config=_freeze(launch_config) if launch_config is not None else None,
            env=MappingProxyType(normalize_string_mapping(data.get("env"), field_name=f"{label}.env")),
            edit_file=edit_file,
            **flags,
        )


@dataclass(frozen=True, slots=True)
class Backend:
    name: str
    markers: Tuple[str, ...]
    tasks: Mapping[str, Task]
    variables: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    env: Mapping[str, str] = field(default_factory=lambda: _EMPTY)
    discovers_targets: bool = False
    configure_marker: str | None = None

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "Backend":
        if not isinstance(data, Mapping):
            raise TypeError(f"Backend '{name}' must be a mapping")

        tasks_section = data.get("tasks", {})
        if not isinstance(tasks_section, Mapping):
            raise TypeError(f"backends.{name}.tasks must be a mapping")
        tasks = {str(key): Task.from_mapping(str(key), value) for key, value in tasks_section.items()}

        variables = data.get("variables", {})
        if not isinstance(variables, Mapping):
            raise TypeError(f"backends.{name}.variables must be a mapping")

        configure_marker = data.get("configure_marker")
        return cls(
            name=name,
            markers=tuple(normalize_string_list(data.get("markers"), field_name=f"backends.{name}.markers")),
            tasks=MappingProxyType(tasks),
            variables=_freeze(variables),
            env=MappingProxyType(normalize_string_mapping(data.get("env"), field_name=f"backends.{name}.env")),
            discovers_targets=bool(data.get("discovers_targets", False)),
            configure_marker=str(configure_marker) if configure_marker else None,
        )


class BackendRegistry:
    """Backends keyed by name, built from raw mappings."""

    def __init__(self) -> None:
        self._raw: Dict[str, Mapping[str, Any]] = {}
        self._backends: Dict[str, Backend] = {}

    @classmethod
    def default(cls, user_backends: Mapping[str, Mapping[str, Any]] | None = None) -> "BackendRegistry":
        """User-level backends first, then the built-ins they do not replace."""

        registry = cls()
        for name, data in (user_backends or {}).items():
            registry.register(str(name), data)
        for name, data in BUILTIN_BACKENDS.items():
            registry.register(name, data)
        return registry

    def register(self, name: str, data: Mapping[str, Any]) -> bool:
        """Register ``name``; the first registration for a name wins."""

        if name in self._backends:
            return False
        backend = Backend.from_mapping(name, data)
        self._raw[name] = copy.deepcopy(dict(data))
        self._backends[name] = backend
        return True

    def override(self, name: str, data: Mapping[str, Any]) -> Backend:
        """Deep-merge ``data`` over the existing definition of ``name`` (``data`` wins)."""

        if not isinstance(data, Mapping):
            raise TypeError(f"Backend '{name}' must be a mapping")
        merged = merge_mappings(self._raw.get(name, {}), data)
        backend = Backend.from_mapping(name, merged)
        self._raw[name] = merged
        self._backends[name] = backend
        return backend

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> "BackendRegistry":
        clone = BackendRegistry()
        clone._raw = dict(self._raw)
        clone._backends = dict(self._backends)
        for name, data in overrides.items():
            clone.override(str(name), data)
        return clone

    def get(self, name: str) -> Backend | None:
        return self._backends.get(name)

    def names(self) -> List[str]:
        return list(self._backends)

    def items(self) -> Iterator[Tuple[str, Backend]]:
        return iter(list(self._backends.items()))

    def __contains__(self, name: object) -> bool:
        return name in self._backends

    def __len__(self) -> int:
        return len(self._backends)
