"""Backend definition and project override validation helpers."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from core.config_loader import PARSE_ERRORS, load_config_file
from core.template import extract_macros

from .backends import KNOWN_TASK_KEYS, Backend, BackendRegistry
from .config import ProjectConfig, find_project_config

if TYPE_CHECKING:  # pragma: no cover
    from .context import AppContext


DISPATCH_VARIABLES = frozenset(
    {"preset", "binary_dir", "build_preset", "build_target", "target_flag", "target", "target_path", "project_config"}
)
"""Variables the dispatcher sets while resolving selections."""

RENAMED_VARIABLES = {"target_arg": "${target_flag} ${build_target}"}


def validate_backend(backend: Backend, *, extra_variables: Iterable[str] = ()) -> list[str]:
    """Return every problem found in ``backend``; an empty list means valid."""

    errors: list[str] = []
    prefix = f"backends.{backend.name}"
    known_variables = DISPATCH_VARIABLES | set(backend.variables) | set(extra_variables)

    if not backend.markers:
        errors.append(f"{prefix}: no markers, the backend can never be detected")

    for name, task in sorted(backend.tasks.items()):
        label = f"{prefix}.tasks.{name}"

        if task.fallback_cmd and not (task.needs_preset or task.needs_build_preset):
            errors.append(f"{label}: fallback_cmd is never used without needs_preset or needs_build_preset")
        if task.supports_build_target and not task.needs_build_preset:
            errors.append(f"{label}: supports_build_target requires needs_build_preset")
        if task.uses_launcher and task.launch_config is None:
            errors.append(f"{label}: use_launcher requires launch_config")

        if task.edit_file:
            ignored = [
                key
                for key, enabled in (
                    ("cmd", bool(task.cmd)),
                    ("fallback_cmd", bool(task.fallback_cmd)),
                    ("args_passthrough", task.args_passthrough),
                    ("use_launcher", task.uses_launcher),
                )
                if enabled
            ]
            if ignored:
                errors.append(f"{label}: {', '.join(ignored)} ignored because edit_file is set")

        referenced = extract_macros([task.cmd or (), task.fallback_cmd or (), task.edit_file or ""])
        for variable in sorted(referenced - known_variables):
            message = f"{label}: unknown variable '${{{variable}}}'"
            if variable in RENAMED_VARIABLES:
                message = f"{message}, use '{RENAMED_VARIABLES[variable]}'"
            errors.append(message)

    return errors


def validate_registry(registry: BackendRegistry, *, extra_variables: Iterable[str] = ()) -> list[str]:
    extra = list(extra_variables)
    errors: list[str] = []
    for _, backend in registry.items():
        errors.extend(validate_backend(backend, extra_variables=extra))
    return errors


def _unknown_task_keys(backends: Mapping[str, Any]) -> list[str]:
    errors: list[str] = []
    for backend_name, data in backends.items():
        tasks = data.get("tasks") if isinstance(data, Mapping) else None
        if not isinstance(tasks, Mapping):
            continue
        for task_name, task in tasks.items():
            if not isinstance(task, Mapping):
                continue
            for key in sorted(set(task) - KNOWN_TASK_KEYS):
                errors.append(f"backends.{backend_name}.tasks.{task_name}: unknown key '{key}'")
    return errors


def validate_project(root: Path, app: "AppContext") -> list[str]:
    """Validate the registry as seen from ``root``, including its override document."""

    path = find_project_config(root)
    if path is None:
        return validate_registry(app.registry)

    try:
        project = ProjectConfig.from_mapping(load_config_file(path), path=path)
    except (OSError, ValueError, *PARSE_ERRORS) as exc:
        return [f"{path.name}: {exc}"]

    errors = _unknown_task_keys(project.backends)
    try:
        registry = app.registry.with_overrides(project.backends)
    except (TypeError, ValueError) as exc:
        errors.append(f"{path.name}: {exc}")
        return errors

    errors.extend(validate_registry(registry, extra_variables=project.variables))
    return errors
