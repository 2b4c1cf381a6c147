"""Utilities for executing shell commands with streaming and dry-run support."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Sequence, TextIO
import os
import shlex
import subprocess
import threading

import psutil


OutputCallback = Callable[[str, str], None]
"""Receives ``(stream_name, line)`` for every line a command prints."""

ExitCallback = Callable[[int], None]
"""Receives the exit code once a command has finished."""


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    streamed: bool = False


class CommandError(RuntimeError):
    """Raised when a command fails."""

    def __init__(self, result: CommandResult):
        message = f"Command failed with exit code {result.returncode}: {' '.join(map(shlex.quote, result.command))}"
        if result.streamed:
            message = f"{message}\nstdout/stderr already streamed above."
        else:
            message = (
                f"{message}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        super().__init__(message)
        self.result = result


class RunningCommand:
    """Handle on a command started with :meth:`CommandRunner.start`."""

    def __init__(self, command: Sequence[str], process: subprocess.Popen[str] | None = None) -> None:
        self.command = list(command)
        self.returncode: int | None = None
        self.cancelled = False
        self._process = process
        self._done = threading.Event()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> int | None:
        self._done.wait(timeout)
        return self.returncode

    def cancel(self) -> None:
        """Terminate the process together with every process it spawned."""

        if self.finished:
            return
        self.cancelled = True
        if self._process is None or self._process.poll() is not None:
            return
        try:
            children = psutil.Process(self._process.pid).children(recursive=True)
        except psutil.Error:
            children = []
        self._process.terminate()
        for child in children:
            try:
                child.terminate()
            except psutil.Error:
                continue

    def _finish(self, returncode: int) -> None:
        self.returncode = returncode
        self._done.set()


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        raise NotImplementedError

    def start(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> RunningCommand:
        raise NotImplementedError

    def format_command(self, command: Sequence[str]) -> str:
        return " ".join(shlex.quote(part) for part in command)


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`."""

    @staticmethod
    def _merge_environment(env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if env is None:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        # Streamed commands inherit the terminal.
        process = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=self._merge_environment(env),
            capture_output=not stream,
            text=True,
            check=False,
        )
        result = CommandResult(
            command=command,
            returncode=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
            streamed=stream,
        )
        if check and result.returncode != 0:
            raise CommandError(result)
        return result

    def start(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> RunningCommand:
        process = subprocess.Popen(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=self._merge_environment(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
        )
        running = RunningCommand(command, process)

        readers = [
            threading.Thread(target=_pump, args=("stdout", process.stdout, on_output), daemon=True),
            threading.Thread(target=_pump, args=("stderr", process.stderr, on_output), daemon=True),
        ]
        for reader in readers:
            reader.start()

        def _wait() -> None:
            for reader in readers:
                reader.join()
            returncode = process.wait()
            try:
                on_exit(returncode)
            finally:
                running._finish(returncode)

        threading.Thread(target=_wait, daemon=True).start()
        return running


def _pump(name: str, pipe: TextIO | None, on_output: OutputCallback) -> None:
    if pipe is None:
        return
    with pipe:
        for line in iter(pipe.readline, ""):
            on_output(name, line.rstrip("\r\n"))


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    note: str | None
    stream: bool


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them."""

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []

    @staticmethod
    def _record_entry(
        *,
        command: Sequence[str],
        cwd: Path | None,
        env: Mapping[str, str] | None,
        note: str | None,
        stream: bool,
    ) -> RecordedCommand:
        return RecordedCommand(
            command=list(command),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else {},
            note=note,
            stream=stream,
        )

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        self.commands.append(
            self._record_entry(command=command, cwd=cwd, env=env, note=note, stream=stream)
        )
        return CommandResult(command=command, returncode=0, stdout="", stderr="")

    def start(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> RunningCommand:
        self.commands.append(
            self._record_entry(command=command, cwd=cwd, env=env, note=None, stream=True)
        )
        running = RunningCommand(command)
        on_exit(0)
        running._finish(0)
        return running

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterable[str]:
        default_cwd = str(workspace) if workspace else None
        for record in self.commands:
            cmd = self.format_command(record.command)
            cwd = record.cwd or default_cwd
            note = record.note
            parts: List[str] = ["[dry-run]"]
            if note:
                parts.append(note)
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(cmd)
            yield " ".join(parts)
