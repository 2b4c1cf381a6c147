"""Project root detection and backend selection."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, Tuple

from .backends import Backend, BackendRegistry
from .config import PROJECT_CONFIG_NAMES


ALL_MARKERS: Tuple[str, ...] = (
    *PROJECT_CONFIG_NAMES,
    "CMakePresets.json",
    "CMakeLists.txt",
    "pyproject.toml",
    "build.zig",
    "Cargo.toml",
    "package.json",
    "go.mod",
    "Makefile",
)
"""Every marker used for root detection."""

PRIORITY: Tuple[str, ...] = ("cmake", "python", "zig")
"""Backends checked before any other, most specific markers first."""


def find_root(start_path: Path | str | None = None, markers: Iterable[str] = ALL_MARKERS) -> Path | None:
    """Return the nearest directory at or above ``start_path`` holding a marker file."""

    start = Path(start_path) if start_path else Path.cwd()
    start = start.expanduser().resolve()
    if start.is_file():
        start = start.parent
    marker_list = list(markers)
    for candidate in (start, *start.parents):
        if matches_markers(candidate, marker_list):
            return candidate
    return None


def detect_backend(root: Path, registry: BackendRegistry) -> Tuple[str, Backend] | Tuple[None, None]:
    for name in PRIORITY:
        backend = registry.get(name)
        if backend and matches_markers(root, backend.markers):
            return name, backend

    for name, backend in registry.items():
        if name in PRIORITY:
            continue
        if backend.markers and matches_markers(root, backend.markers):
            return name, backend

    return None, None


def matches_markers(root: Path, markers: Iterable[str] | None) -> bool:
    if not markers:
        return False
    return any(has_marker(root, marker) for marker in markers)


def has_marker(root: Path, marker: str) -> bool:
    return (Path(root) / marker).exists()
