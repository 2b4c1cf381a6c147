"""Output sinks: where a started command's output ends up.

A sink owns at most one live command. Its content is rebuilt from the
rendering hooks (``replace``, ``append``, ``complete``); subclasses decide
whether that content is kept (:class:`LogCollectorSink`) or written to a
stream as it arrives (:class:`TerminalSink`).
"""
from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Mapping, Sequence, TextIO, Tuple
import sys
import threading

from core.command_runner import CommandRunner, RunningCommand


SPAWN_FAILURE_EXIT_CODE = 127

CompletionCallback = Callable[[int], None]


def command_name(command: Sequence[str]) -> str:
    return command[0] if command else "command"


def status_line(name: str, returncode: int) -> str:
    if returncode == 0:
        return f"[✓ {name} completed]"
    return f"[✗ {name} failed (exit {returncode})]"


class OutputSink:
    """Base sink: runs commands through ``runner`` and feeds the hooks."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner
        self._lock = threading.RLock()
        self._generation = 0
        self._finished_generation = 0
        self._running: RunningCommand | None = None
        self._name = "command"

    @property
    def running(self) -> RunningCommand | None:
        with self._lock:
            return self._running

    def start(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> RunningCommand:
        with self._lock:
            # Anything the previous run still prints is dropped from now on.
            self._generation += 1
            generation = self._generation
            self._running = None
            self._name = command_name(command)
            self.replace(f"{self._name} (running...)", [f"$ {self.runner.format_command(command)}", ""])

        def _on_output(_stream: str, line: str) -> None:
            if not line:
                return
            with self._lock:
                if generation != self._generation:
                    return
                self.append(line)

        def _on_exit(returncode: int) -> None:
            self._finish(generation, returncode, on_complete)

        try:
            running = self.runner.start(command, cwd=cwd, env=env, on_output=_on_output, on_exit=_on_exit)
        except OSError as exc:
            running = RunningCommand(command)
            running._finish(SPAWN_FAILURE_EXIT_CODE)
            _on_output("stderr", str(exc))
            _on_exit(SPAWN_FAILURE_EXIT_CODE)
            return running

        with self._lock:
            if generation == self._generation and generation != self._finished_generation:
                self._running = running
        return running

    def cancel(self) -> bool:
        """Terminate the live command and mark its output stale.

        Returns ``False`` when there is nothing to cancel.
        """

        with self._lock:
            running = self._running
            if running is None or running.finished:
                return False
            self._generation += 1
            self._running = None
        running.cancel()
        return True

    def _finish(self, generation: int, returncode: int, on_complete: CompletionCallback | None) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._finished_generation = generation
            self._running = None
            self.complete(returncode)
        if on_complete is not None:
            on_complete(returncode)

    # rendering hooks, always called with the lock held
    def replace(self, title: str, lines: Sequence[str]) -> None:
        raise NotImplementedError

    def append(self, line: str) -> None:
        raise NotImplementedError

    def complete(self, returncode: int) -> None:
        raise NotImplementedError


class LogCollectorSink(OutputSink):
    """Collects output as a titled list of entries."""

    def __init__(self, runner: CommandRunner) -> None:
        super().__init__(runner)
        self.title = ""
        self.entries: List[str] = []
        self.returncode: int | None = None

    def replace(self, title: str, lines: Sequence[str]) -> None:
        self.title = title
        self.entries = list(lines)
        self.returncode = None

    def append(self, line: str) -> None:
        self.entries.append(line)

    def complete(self, returncode: int) -> None:
        self.returncode = returncode
        self.entries.append("")
        self.entries.append(status_line(self._name, returncode))
        self.title = f"{self._name} {'✓' if returncode == 0 else '✗'}"

    def snapshot(self) -> Tuple[str, List[str]]:
        with self._lock:
            return self.title, list(self.entries)


class TerminalSink(OutputSink):
    """Writes output to a text stream as it arrives."""

    def __init__(self, runner: CommandRunner, stream: TextIO | None = None) -> None:
        super().__init__(runner)
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def _write(self, line: str) -> None:
        self.stream.write(f"{line}\n")
        self.stream.flush()

    def replace(self, title: str, lines: Sequence[str]) -> None:
        for line in lines:
            self._write(line)

    def append(self, line: str) -> None:
        self._write(line)

    def complete(self, returncode: int) -> None:
        self._write("")
        self._write(status_line(self._name, returncode))


def create_sink(mode: str, runner: CommandRunner, stream: TextIO | None = None) -> OutputSink:
    if mode == "terminal":
        return TerminalSink(runner, stream)
    if mode == "log":
        return LogCollectorSink(runner)
    raise ValueError(f"Unknown output mode: {mode}")


__all__ = [
    "LogCollectorSink",
    "OutputSink",
    "TerminalSink",
    "command_name",
    "create_sink",
    "status_line",
]
