"""External launch capabilities: debugger sessions and file opening."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping
import os
import shlex
import shutil

from core.command_runner import CommandError, CommandRunner

if TYPE_CHECKING:  # pragma: no cover
    from .context import Console


DEBUGGERS: Dict[str, str] = {
    "codelldb": "lldb",
    "lldb": "lldb",
    "cppdbg": "gdb",
    "gdb": "gdb",
}
"""Launch configuration ``type`` to terminal debugger executable."""


@dataclass(slots=True)
class LaunchRequest:
    config: Dict[str, Any]
    program: str | None
    args: List[str] = field(default_factory=list)
    cwd: Path | None = None
    env: Dict[str, str] = field(default_factory=dict)


class Launcher:
    def launch(self, request: LaunchRequest) -> bool:
        """Start ``request``; ``False`` hands the command back to the output sink."""

        raise NotImplementedError


class NullLauncher(Launcher):
    def launch(self, request: LaunchRequest) -> bool:
        return False


class DebuggerLauncher(Launcher):
    """Runs the program under ``lldb`` or ``gdb`` in the foreground."""

    def __init__(
        self,
        runner: CommandRunner,
        console: "Console | None" = None,
        *,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.runner = runner
        self.console = console
        self._which = which

    def debugger_command(self, request: LaunchRequest) -> List[str] | None:
        kind = str(request.config.get("request", "launch"))
        if kind != "launch":
            self._info(f"Debug request '{kind}' is not supported, falling back to terminal")
            return None

        launch_type = str(request.config.get("type", ""))
        debugger = DEBUGGERS.get(launch_type)
        if debugger is None:
            self._info(f"No debugger for '{launch_type}', falling back to terminal")
            return None
        if self._which(debugger) is None:
            self._info(f"{debugger} not available, falling back to terminal")
            return None
        if not request.program:
            return None

        if debugger == "gdb":
            return ["gdb", "--args", request.program, *request.args]
        return ["lldb", "--", request.program, *request.args]

    def launch(self, request: LaunchRequest) -> bool:
        command = self.debugger_command(request)
        if command is None:
            return False
        self.runner.run(command, cwd=request.cwd, env=request.env, check=False, note="debug", stream=True)
        return True

    def _info(self, message: str) -> None:
        if self.console is not None:
            self.console.info(message)


class FileOpener:
    def open(self, path: Path) -> bool:
        raise NotImplementedError


class EditorOpener(FileOpener):
    """Opens files with ``$VISUAL``, ``$EDITOR`` or ``vi``."""

    def __init__(
        self,
        runner: CommandRunner,
        console: "Console | None" = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.runner = runner
        self.console = console
        self._environ = environ

    def editor_command(self) -> List[str]:
        env = os.environ if self._environ is None else self._environ
        editor = env.get("VISUAL") or env.get("EDITOR") or "vi"
        return shlex.split(editor)

    def open(self, path: Path) -> bool:
        command = [*self.editor_command(), str(path)]
        try:
            self.runner.run(command, check=True, note="edit", stream=True)
        except (CommandError, OSError) as exc:
            if self.console is not None:
                self.console.error(f"Could not open {path}: {exc}")
            return False
        return True
