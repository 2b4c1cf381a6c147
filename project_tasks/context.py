"""
Console and application context for project-tasks.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, TextIO
import sys

from core.command_runner import CommandRunner, SubprocessCommandRunner

from .backends import BackendRegistry
from .config import GlobalConfig, ProjectConfig, load_project_config, resolve_session_path
from .launch import DebuggerLauncher, EditorOpener, FileOpener, Launcher
from .output import OutputSink, create_sink
from .presets import PresetStore
from .selector import ConsoleSelector, Selector
from .session import SessionStore


class Console:
    """Leveled console output.

    Levels: none < error < warn < info < debug
    Errors and warnings go to stderr, everything else to stdout.
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "warn": 2,
        "info": 3,
        "debug": 4,
    }

    def __init__(
        self,
        level: str = "info",
        prefix: str = "[project-tasks]",
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ):
        self.level_name = level
        self.level = self.LEVELS.get(level, self.LEVELS["info"])
        self.prefix = prefix
        self._stdout = stdout
        self._stderr = stderr

    def _emit(self, message: str, *, error: bool) -> None:
        if error:
            stream = self._stderr if self._stderr is not None else sys.stderr
        else:
            stream = self._stdout if self._stdout is not None else sys.stdout
        print(f"{self.prefix} {message}", file=stream)

    def error(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            self._emit(message, error=True)

    def warn(self, message: str) -> None:
        if self.level >= self.LEVELS["warn"]:
            self._emit(message, error=True)

    def info(self, message: str) -> None:
        if self.level >= self.LEVELS["info"]:
            self._emit(message, error=False)

    def debug(self, message: str) -> None:
        if self.level >= self.LEVELS["debug"]:
            self._emit(f"debug: {message}", error=False)


@dataclass
class AppContext:
    config: GlobalConfig
    console: Console
    runner: CommandRunner
    registry: BackendRegistry
    presets: PresetStore
    session: SessionStore
    sink: OutputSink
    selector: Selector
    launcher: Launcher
    opener: FileOpener
    _project_configs: Dict[str, ProjectConfig] = field(default_factory=dict, repr=False)

    def project_config(self, root: Path) -> ProjectConfig:
        key = str(Path(root))
        if key not in self._project_configs:
            self._project_configs[key] = load_project_config(Path(root), self.console)
        return self._project_configs[key]

    def registry_for(self, root: Path) -> BackendRegistry:
        """The registry with the project's backend overrides applied."""

        project = self.project_config(root)
        if not project.backends:
            return self.registry
        try:
            return self.registry.with_overrides(project.backends)
        except (TypeError, ValueError) as exc:
            name = project.path.name if project.path else "project config"
            self.console.warn(f"Invalid {name}: {exc}")
            return self.registry

    def invalidate(self, root: Path | None = None) -> None:
        if root is None:
            self._project_configs.clear()
        else:
            self._project_configs.pop(str(Path(root)), None)
        self.presets.invalidate(root)


def create_app_context(
    config: GlobalConfig | None = None,
    *,
    runner: CommandRunner | None = None,
    console: Console | None = None,
    selector: Selector | None = None,
    launcher: Launcher | None = None,
    opener: FileOpener | None = None,
    sink: OutputSink | None = None,
    session_path: Path | None = None,
) -> AppContext:
    config = config or GlobalConfig()
    console = console or Console(config.log_level)
    runner = runner or SubprocessCommandRunner()
    session_file = Path(session_path) if session_path else resolve_session_path(config)
    console.debug(f"Session file: {session_file}")
    return AppContext(
        config=config,
        console=console,
        runner=runner,
        registry=BackendRegistry.default(config.backends),
        presets=PresetStore(console),
        session=SessionStore(session_file),
        sink=sink or create_sink(config.output_mode, runner),
        selector=selector or ConsoleSelector(),
        launcher=launcher or DebuggerLauncher(runner, console),
        opener=opener or EditorOpener(runner, console),
    )
