"""Persist the last selections (preset, build preset, targets) per project.

The document is a JSON object keyed by project root; each value maps a key
such as ``"preset"`` to the last chosen string. It is read lazily once and
rewritten in full after every change. Losing it only costs convenience, so
unreadable documents are treated as empty and write failures are ignored.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict
import json
import os
import tempfile


PRESET = "preset"
BUILD_PRESET = "build_preset"
TARGET = "target"
BUILD_TARGET = "build_target"

SESSION_KEYS = (PRESET, BUILD_PRESET, TARGET, BUILD_TARGET)


class SessionStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._data: Dict[str, Dict[str, Any]] | None = None

    def load(self) -> Dict[str, Dict[str, Any]]:
        if self._data is not None:
            return self._data

        data: Any = {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError):
            data = {}

        if not isinstance(data, dict):
            data = {}
        self._data = {str(root): dict(values) for root, values in data.items() if isinstance(values, dict)}
        return self._data

    def save(self) -> None:
        if self._data is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(self._data, handle, indent=2, sort_keys=True)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError:
            return

    def get(self, root: Path | str, key: str) -> str | None:
        project = self.load().get(_root_key(root))
        if project is None:
            return None
        return project.get(key)

    def set(self, root: Path | str, key: str, value: str) -> None:
        data = self.load()
        data.setdefault(_root_key(root), {})[key] = value
        self.save()

    def clear(self, root: Path | str) -> None:
        data = self.load()
        data.pop(_root_key(root), None)
        self.save()

    def project(self, root: Path | str) -> Dict[str, Any]:
        return dict(self.load().get(_root_key(root), {}))

    def invalidate(self) -> None:
        """Forget the in-memory copy; the next access re-reads the file."""

        self._data = None


def _root_key(root: Path | str) -> str:
    return str(Path(root))
