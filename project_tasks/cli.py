"""Command line interface for project-tasks."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Dict, Iterable, List, Tuple
import sys

from core.command_runner import CommandRunner, RecordingCommandRunner, SubprocessCommandRunner
from core.config_loader import PARSE_ERRORS

from . import session as session_keys
from .config import LOG_LEVELS, OUTPUT_MODES, GlobalConfig, load_global_config
from .context import AppContext, Console, create_app_context
from .detect import detect_backend, find_root
from .dispatcher import CANCEL_TASK, DispatchStatus, TaskDispatcher
from .output import LogCollectorSink, create_sink
from .validation import validate_project, validate_registry


INTERRUPTED_EXIT_CODE = 130


def _make_runner(dry_run: bool) -> SubprocessCommandRunner | RecordingCommandRunner:
    return RecordingCommandRunner() if dry_run else SubprocessCommandRunner()


def _split_passthrough(argv: Iterable[str]) -> Tuple[List[str], List[str]]:
    """Split ``argv`` at the first ``--``; everything after it goes to the task."""

    values = list(argv)
    if "--" not in values:
        return values, []
    index = values.index("--")
    return values[:index], values[index + 1:]


def _parse_env(values: Iterable[str]) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for raw in values:
        key, separator, value = raw.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Invalid environment assignment '{raw}', expected KEY=VALUE")
        env[key.strip()] = value
    return env


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="project-tasks", description="Project-aware build, run and test task dispatcher")
    parser.add_argument(
        "-C",
        "--directory",
        dest="directory",
        metavar="PATH",
        help="Start project detection from PATH instead of the working directory",
    )
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Override the configured log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a task (configure, build, run, debug, test, package, clean, edit, cancel)")
    run_parser.add_argument("task", help="Task name")
    run_parser.add_argument("-p", "--prompt", action="store_true", help="Ask again instead of reusing remembered choices")
    run_parser.add_argument(
        "-e",
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra environment variable for the command (repeatable)",
    )
    run_parser.add_argument("-n", "--dry-run", action="store_true", help="Print commands without executing them")
    run_parser.add_argument("-o", "--output", choices=OUTPUT_MODES, help="Where command output goes")

    subparsers.add_parser("info", help="Show the detected project root, backend and tasks")
    subparsers.add_parser("presets", help="List configure and build presets")
    subparsers.add_parser("targets", help="List targets for the remembered preset")

    session_parser = subparsers.add_parser("session", help="Show remembered selections for the project")
    session_parser.add_argument("--clear", action="store_true", help="Forget remembered selections for the project")

    subparsers.add_parser("validate", help="Validate backend definitions and project overrides")

    return parser.parse_args(list(argv))


def _make_app(args: Namespace, config: GlobalConfig) -> AppContext:
    runner: CommandRunner = _make_runner(getattr(args, "dry_run", False))
    mode = getattr(args, "output", None) or config.output_mode
    return create_app_context(config, runner=runner, sink=create_sink(mode, runner))


def main(argv: Iterable[str] | None = None) -> int:
    own_args, passthrough = _split_passthrough(sys.argv[1:] if argv is None else argv)
    args = _parse_arguments(own_args)
    args.task_args = passthrough

    try:
        config = load_global_config()
    except (OSError, ValueError, *PARSE_ERRORS) as exc:
        print(f"Error: {exc}")
        return 2
    if args.log_level:
        config.log_level = args.log_level

    app = _make_app(args, config)
    if args.command == "run":
        return _handle_run(args, app)
    if args.command == "info":
        return _handle_info(args, app)
    if args.command == "presets":
        return _handle_presets(args, app)
    if args.command == "targets":
        return _handle_targets(args, app)
    if args.command == "session":
        return _handle_session(args, app)
    if args.command == "validate":
        return _handle_validate(args, app)
    raise ValueError(f"Unknown command: {args.command}")


def _emit_dry_run_output(runner: RecordingCommandRunner, *, workspace: Path | None) -> None:
    for line in runner.iter_formatted(workspace=workspace):
        print(line)


def _handle_run(args: Namespace, app: AppContext) -> int:
    try:
        env = _parse_env(getattr(args, "env", []))
    except ValueError as exc:
        print(f"Error: {exc}")
        return 2

    dispatcher = TaskDispatcher(app)
    result = dispatcher.run_task(
        args.task,
        prompt=getattr(args, "prompt", False),
        args=getattr(args, "task_args", []),
        env=env,
        start_path=getattr(args, "directory", None),
    )

    returncode = 0 if result.ok else 1
    if result.status is DispatchStatus.STARTED and result.execution is not None:
        try:
            code = result.execution.wait()
        except KeyboardInterrupt:
            dispatcher.run_task(CANCEL_TASK)
            result.execution.wait()
            return INTERRUPTED_EXIT_CODE
        returncode = code if code is not None else 1

    if isinstance(app.runner, RecordingCommandRunner):
        _emit_dry_run_output(app.runner, workspace=result.context.root if result.context else None)

    if isinstance(app.sink, LogCollectorSink) and result.status is DispatchStatus.STARTED:
        title, entries = app.sink.snapshot()
        print(title)
        for entry in entries:
            print(f"  {entry}")

    return returncode


def _require_root(args: Namespace, console: Console) -> Path | None:
    root = find_root(getattr(args, "directory", None))
    if root is None:
        console.warn("No project root found")
    return root


def _handle_info(args: Namespace, app: AppContext) -> int:
    root = find_root(getattr(args, "directory", None))
    if root is None:
        print("Project root: Not detected")
        print("Backend: None")
        return 1

    backend_name, backend = detect_backend(root, app.registry_for(root))
    print(f"Project root: {root}")
    print(f"Backend: {backend_name or 'None'}")
    if backend is not None:
        print(f"Tasks: {', '.join(sorted(backend.tasks))}")
    return 0


def _handle_presets(args: Namespace, app: AppContext) -> int:
    root = _require_root(args, app.console)
    if root is None:
        return 1

    presets = app.presets.load(root)
    if not presets:
        print("No CMake presets found")
        return 1

    remembered = app.session.get(root, session_keys.PRESET)
    print("Configure presets:")
    for preset in presets:
        marker = "*" if preset.name == remembered else " "
        print(f" {marker} {preset.label()}  [{preset.binary_dir}]")

    build_presets = app.presets.get_build_presets(root)
    if build_presets:
        remembered_build = app.session.get(root, session_keys.BUILD_PRESET)
        print("Build presets:")
        for build_preset in build_presets:
            marker = "*" if build_preset.name == remembered_build else " "
            suffix = f"  -> {build_preset.configure_preset}" if build_preset.configure_preset else ""
            print(f" {marker} {build_preset.label()}{suffix}")
    return 0


def _handle_targets(args: Namespace, app: AppContext) -> int:
    root = _require_root(args, app.console)
    if root is None:
        return 1
    _, backend = detect_backend(root, app.registry_for(root))
    if backend is None:
        app.console.warn("No backend detected for this project")
        return 1

    targets: List[Tuple[str, str | None]] = []
    if backend.discovers_targets:
        binary_dir = backend.variables.get("build_dir") or "build"
        remembered = app.session.get(root, session_keys.PRESET)
        for preset in app.presets.load(root) or []:
            if preset.name == remembered and preset.binary_dir:
                binary_dir = preset.binary_dir
        targets = [(target.name, target.path) for target in app.presets.get_targets(root, binary_dir) or []]
    if not targets:
        project = app.project_config(root)
        targets = [(name, spec.path) for name, spec in project.targets.items()]

    if not targets:
        print("No targets found. Run configure first?")
        return 1
    for name, path in targets:
        print(f"{name}  {path or '-'}")
    return 0


def _handle_session(args: Namespace, app: AppContext) -> int:
    root = _require_root(args, app.console)
    if root is None:
        return 1

    if getattr(args, "clear", False):
        app.session.clear(root)
        print(f"Session cleared for {root}")
        return 0

    record = app.session.project(root)
    if not record:
        print("No remembered selections")
        return 0
    for key in session_keys.SESSION_KEYS:
        if key not in record:
            continue
        value = record[key]
        if key == session_keys.BUILD_TARGET and value == "":
            value = "(all targets)"
        print(f"{key}: {value}")
    return 0


def _handle_validate(args: Namespace, app: AppContext) -> int:
    root = find_root(getattr(args, "directory", None))
    errors = validate_registry(app.registry) if root is None else validate_project(root, app)

    if errors:
        print("Validation failed:")
        for message in errors:
            print(f"  {message}")
        return 1

    print("Validation successful")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
