"""Interactive choice between presets and targets."""
from __future__ import annotations

from typing import Callable, Sequence, TextIO, TypeVar
import sys


T = TypeVar("T")


class Selector:
    """Asks the user to pick one item; ``None`` means the user declined."""

    def select(
        self,
        items: Sequence[T],
        prompt: str,
        format_item: Callable[[T], str] | None = None,
    ) -> T | None:
        raise NotImplementedError


class ConsoleSelector(Selector):
    """Numbered list on ``stdout``, answer read from ``stdin``.

    An empty answer, ``q`` or end of input declines.
    """

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self._stdin = stdin
        self._stdout = stdout

    def select(
        self,
        items: Sequence[T],
        prompt: str,
        format_item: Callable[[T], str] | None = None,
    ) -> T | None:
        if not items:
            return None
        stdin = self._stdin if self._stdin is not None else sys.stdin
        stdout = self._stdout if self._stdout is not None else sys.stdout
        render = format_item or str

        print(prompt, file=stdout)
        for index, item in enumerate(items, start=1):
            print(f"  {index}) {render(item)}", file=stdout)

        while True:
            stdout.write("> ")
            stdout.flush()
            answer = stdin.readline()
            if not answer:
                return None
            answer = answer.strip()
            if not answer or answer.lower() == "q":
                return None
            if answer.isdigit() and 1 <= int(answer) <= len(items):
                return items[int(answer) - 1]
            print(f"Invalid selection: {answer}", file=stdout)
