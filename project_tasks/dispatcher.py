"""Task dispatcher: turns a task name into a command, a debug launch or an opened file.

Resolution runs in a fixed order for every request: project root, backend,
task, environment and variables, then each selection the task declares
(configure preset, build preset and build target, run target), and finally
execution. Every selection goes through the session first and only asks the
selector when nothing usable is remembered or the caller forces a prompt.

Failures never raise: each one is reported on the console and returned as a
:class:`DispatchResult` with a non-successful status.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from core.command_runner import RunningCommand
from core.template import expand_args, expand_variables

from . import session as session_keys
from .backends import Backend, Task, thaw
from .config import PROJECT_CONFIG_NAMES, find_project_config
from .context import AppContext
from .detect import detect_backend, find_root
from .launch import LaunchRequest
from .output import command_name
from .presets import ConfigurePreset, Target


CANCEL_TASK = "cancel"
ALL_TARGETS_LABEL = "(all targets)"
# Overrides written for a single `${target_arg}` must use
# `${target_flag} ${build_target}`, which expand to two arguments.
TARGET_FLAG = "--target"
DEFAULT_BUILD_DIR = "build"


class DispatchStatus(str, Enum):
    STARTED = "started"
    LAUNCHED = "launched"
    OPENED = "opened"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    DECLINED = "declined"
    CONFIGURATION_INCOMPLETE = "configuration_incomplete"
    FAILED = "failed"


@dataclass(slots=True)
class ExecutionContext:
    root: Path
    backend: Backend
    task: Task
    env: Dict[str, str] = field(default_factory=dict)
    args: List[str] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    request_env: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DispatchResult:
    status: DispatchStatus
    task: str
    message: str | None = None
    command: List[str] | None = None
    execution: RunningCommand | None = None
    context: ExecutionContext | None = None

    @property
    def ok(self) -> bool:
        return self.status in (
            DispatchStatus.STARTED,
            DispatchStatus.LAUNCHED,
            DispatchStatus.OPENED,
            DispatchStatus.CANCELLED,
        )


class _Stop(Exception):
    """Ends a dispatch early; carries the status to report."""

    def __init__(self, status: DispatchStatus, message: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass(slots=True)
class _BuildTargetChoice:
    label: str
    value: str


def build_command(task: Task, variables: Mapping[str, Any], args: Sequence[str] = ()) -> List[str]:
    """Expand the task's command; the fallback is used when a required selection is missing."""

    template = task.cmd
    missing_selection = (task.needs_preset and not variables.get("preset")) or (
        task.needs_build_preset and not variables.get("build_preset")
    )
    if missing_selection and task.fallback_cmd:
        template = task.fallback_cmd
    if not template:
        return []

    command = expand_args(template, variables)
    if task.args_passthrough and args:
        command.extend(args)
    return command


class TaskDispatcher:
    def __init__(self, app: AppContext) -> None:
        self.app = app

    @property
    def console(self):
        return self.app.console

    def run_task(
        self,
        name: str,
        *,
        prompt: bool = False,
        args: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        start_path: Path | str | None = None,
    ) -> DispatchResult:
        if name == CANCEL_TASK:
            return self._cancel()

        ctx: ExecutionContext | None = None
        try:
            ctx = self._build_context(name, args=args, env=env, start_path=start_path)
            self._resolve_selections(ctx, prompt)
            return self._finalize(ctx)
        except _Stop as stop:
            return DispatchResult(status=stop.status, task=name, message=stop.message, context=ctx)

    def _cancel(self) -> DispatchResult:
        if self.app.sink.cancel():
            self.console.info("Cancelled")
            return DispatchResult(status=DispatchStatus.CANCELLED, task=CANCEL_TASK, message="Cancelled")
        self.console.info("Nothing to cancel")
        return DispatchResult(status=DispatchStatus.NOT_FOUND, task=CANCEL_TASK, message="Nothing to cancel")

    def _warn_stop(self, status: DispatchStatus, message: str) -> _Stop:
        self.console.warn(message)
        return _Stop(status, message)

    def _build_context(
        self,
        name: str,
        *,
        args: Sequence[str] | None,
        env: Mapping[str, str] | None,
        start_path: Path | str | None,
    ) -> ExecutionContext:
        root = find_root(start_path)
        if root is None:
            raise self._warn_stop(DispatchStatus.NOT_FOUND, "No project root found")

        registry = self.app.registry_for(root)
        backend_name, backend = detect_backend(root, registry)
        if backend is None:
            raise self._warn_stop(DispatchStatus.NOT_FOUND, "No backend detected for this project")

        task = backend.tasks.get(name)
        if task is None:
            message = f"Task '{name}' not available for {backend_name}"
            self.console.info(message)
            raise _Stop(DispatchStatus.NOT_FOUND, message)

        project = self.app.project_config(root)
        request_env = {str(key): str(value) for key, value in (env or {}).items()}
        variables: Dict[str, Any] = thaw(backend.variables)
        variables.update(project.variables)
        existing_config = find_project_config(root)
        variables.setdefault("project_config", existing_config.name if existing_config else PROJECT_CONFIG_NAMES[0])

        self.console.debug(f"Root: {root}, backend: {backend_name}, task: {name}")
        return ExecutionContext(
            root=root,
            backend=backend,
            task=task,
            env={**backend.env, **project.env, **request_env},
            args=list(args or []),
            variables=variables,
            request_env=request_env,
        )

    def _resolve_selections(self, ctx: ExecutionContext, prompt: bool) -> None:
        task = ctx.task

        if task.needs_preset:
            preset = self._select_preset(ctx, prompt)
            if preset is not None:
                self._apply_preset(ctx, preset)
            elif not task.fallback_cmd:
                raise _Stop(DispatchStatus.DECLINED, "No preset selected")

        if task.needs_build_preset:
            self._resolve_build_preset(ctx, prompt)

        if task.needs_target:
            if ctx.backend.discovers_targets:
                self._ensure_preset_loaded(ctx)
            self._resolve_target(ctx, prompt)

    # configure presets

    def _load_presets(self, ctx: ExecutionContext) -> List[ConfigurePreset]:
        return self.app.presets.load(ctx.root) or []

    def _apply_preset(self, ctx: ExecutionContext, preset: ConfigurePreset) -> None:
        ctx.variables["preset"] = preset.name
        ctx.variables["binary_dir"] = preset.binary_dir or ctx.variables.get("build_dir") or DEFAULT_BUILD_DIR

    def _select_preset(self, ctx: ExecutionContext, prompt: bool) -> ConfigurePreset | None:
        presets = self._load_presets(ctx)
        if not presets:
            self.console.warn("No CMake presets found")
            return None

        last = self.app.session.get(ctx.root, session_keys.PRESET)
        if last and not prompt:
            for preset in presets:
                if preset.name == last:
                    return preset

        choice = self.app.selector.select(presets, "Select preset:", ConfigurePreset.label)
        if choice is not None:
            self.app.session.set(ctx.root, session_keys.PRESET, choice.name)
        return choice

    def _ensure_preset_loaded(self, ctx: ExecutionContext) -> None:
        """Make ``binary_dir`` known, asking only when nothing is remembered."""

        if ctx.variables.get("preset"):
            return

        presets = self._load_presets(ctx)
        if not presets:
            ctx.variables["binary_dir"] = ctx.variables.get("build_dir") or DEFAULT_BUILD_DIR
            return

        last = self.app.session.get(ctx.root, session_keys.PRESET)
        if last:
            for preset in presets:
                if preset.name == last:
                    self._apply_preset(ctx, preset)
                    return

        preset = self._select_preset(ctx, False)
        if preset is not None:
            self._apply_preset(ctx, preset)
        else:
            ctx.variables["binary_dir"] = (
                ctx.variables.get("binary_dir") or ctx.variables.get("build_dir") or DEFAULT_BUILD_DIR
            )

    # build presets and build targets

    def _resolve_build_preset(self, ctx: ExecutionContext, prompt: bool) -> None:
        task = ctx.task
        self._ensure_preset_loaded(ctx)

        if self.app.presets.has_build_preset(ctx.root):
            build_presets = self.app.presets.get_build_presets(ctx.root)
            choice = None
            last = self.app.session.get(ctx.root, session_keys.BUILD_PRESET)
            if last and not prompt:
                choice = next((preset for preset in build_presets if preset.name == last), None)
            if choice is None:
                choice = self.app.selector.select(build_presets, "Select build preset:", lambda item: item.label())
                if choice is not None:
                    self.app.session.set(ctx.root, session_keys.BUILD_PRESET, choice.name)

            if choice is not None:
                ctx.variables["build_preset"] = choice.name
                if task.supports_build_target and prompt:
                    self._apply_build_target(ctx, self._select_build_target(ctx))
                return
            if not task.fallback_cmd:
                raise _Stop(DispatchStatus.DECLINED, "No build preset selected")
            return

        if not task.fallback_cmd:
            raise _Stop(DispatchStatus.NOT_FOUND, "No build presets found")
        if task.supports_build_target:
            self._apply_build_target(ctx, self._select_build_target(ctx))

    def _apply_build_target(self, ctx: ExecutionContext, target: str) -> None:
        ctx.variables["build_target"] = target
        ctx.variables["target_flag"] = TARGET_FLAG if target else ""

    def _select_build_target(self, ctx: ExecutionContext) -> str:
        targets = self.app.presets.get_targets(ctx.root, ctx.variables.get("binary_dir")) or []
        choices = [_BuildTargetChoice(ALL_TARGETS_LABEL, "")]
        choices.extend(_BuildTargetChoice(target.name, target.name) for target in targets)

        last = self.app.session.get(ctx.root, session_keys.BUILD_TARGET)
        if last is not None:
            if last == "":
                return last
            if any(choice.value == last for choice in choices):
                return last
            # nothing discovered yet: trust the remembered name
            if len(choices) <= 1:
                return last

        choice = self.app.selector.select(choices, "Select build target:", lambda item: item.label)
        if choice is None:
            return ""
        self.app.session.set(ctx.root, session_keys.BUILD_TARGET, choice.value)
        return choice.value

    # run targets

    def _available_targets(self, ctx: ExecutionContext) -> List[Target]:
        if ctx.backend.discovers_targets and ctx.variables.get("binary_dir"):
            discovered = self.app.presets.get_targets(ctx.root, ctx.variables["binary_dir"])
            if discovered:
                return discovered

        project = self.app.project_config(ctx.root)
        return [
            Target(name=name, path=spec.path, args=tuple(spec.args), env=dict(spec.env))
            for name, spec in project.targets.items()
        ]

    def _resolve_target(self, ctx: ExecutionContext, prompt: bool) -> None:
        targets = self._available_targets(ctx)
        if not targets:
            raise self._warn_stop(DispatchStatus.NOT_FOUND, "No targets found. Run configure first?")

        choice: Target | None = None
        last = self.app.session.get(ctx.root, session_keys.TARGET)
        if last and not prompt:
            choice = next((target for target in targets if target.name == last), None)
        if choice is None:
            choice = self.app.selector.select(targets, "Select target:", lambda item: item.name)
            if choice is None:
                raise _Stop(DispatchStatus.DECLINED, "No target selected")
            self.app.session.set(ctx.root, session_keys.TARGET, choice.name)

        ctx.variables["target"] = choice.name
        ctx.variables["target_path"] = choice.path or ""
        if choice.env:
            ctx.env = {**ctx.env, **choice.env, **ctx.request_env}
        if choice.args:
            ctx.args = [*choice.args, *ctx.args]

    # execution

    def _finalize(self, ctx: ExecutionContext) -> DispatchResult:
        task = ctx.task
        if task.edit_file:
            path = Path(expand_variables(task.edit_file, ctx.variables))
            if not path.is_absolute():
                path = ctx.root / path
            if not self.app.opener.open(path):
                return DispatchResult(status=DispatchStatus.FAILED, task=task.name, message=f"Could not open {path}", context=ctx)
            return DispatchResult(status=DispatchStatus.OPENED, task=task.name, message=str(path), context=ctx)

        ctx.env = {**ctx.env, **task.env}
        self._check_build_directory(ctx)

        command = build_command(task, ctx.variables, ctx.args)
        if not command:
            self.console.error("Could not build command")
            return DispatchResult(status=DispatchStatus.FAILED, task=task.name, message="Could not build command", context=ctx)

        if task.uses_launcher and task.launch_config is not None:
            request = LaunchRequest(
                config=thaw(task.launch_config),
                program=ctx.variables.get("target_path") or command[0],
                args=command[1:],
                cwd=ctx.root,
                env=dict(ctx.env),
            )
            if self.app.launcher.launch(request):
                return DispatchResult(status=DispatchStatus.LAUNCHED, task=task.name, command=command, context=ctx)

        return self._start(ctx, command)

    def _check_build_directory(self, ctx: ExecutionContext) -> None:
        if not ctx.task.needs_build_preset or ctx.variables.get("build_preset"):
            return

        binary_dir = str(ctx.variables.get("binary_dir") or "")
        if not binary_dir:
            message = "No build directory found. Run configure first."
            self.console.error(message)
            raise _Stop(DispatchStatus.CONFIGURATION_INCOMPLETE, message)

        marker = ctx.backend.configure_marker
        if marker and not (ctx.root / binary_dir / marker).exists():
            message = f"Build directory '{binary_dir}' not configured. Run configure first."
            self.console.error(message)
            raise _Stop(DispatchStatus.CONFIGURATION_INCOMPLETE, message)

    def _start(self, ctx: ExecutionContext, command: List[str]) -> DispatchResult:
        name = command_name(command)

        def _on_complete(returncode: int) -> None:
            if returncode == 0:
                self.console.info(f"✓ {name} completed")
            else:
                self.console.error(f"✗ {name} failed (exit {returncode})")

        self.console.info(f"Running: {name}")
        running = self.app.sink.start(command, cwd=ctx.root, env=ctx.env, on_complete=_on_complete)
        return DispatchResult(
            status=DispatchStatus.STARTED,
            task=ctx.task.name,
            command=command,
            execution=running,
            context=ctx,
        )


__all__ = [
    "DispatchResult",
    "DispatchStatus",
    "ExecutionContext",
    "TaskDispatcher",
    "build_command",
]
