"""Shared helpers for locating and loading configuration mappings."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

import json
import tomllib

import yaml


ConfigLoader = Callable[[Any], Any]


FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".json": lambda stream: json.load(stream),
    ".toml": lambda stream: tomllib.load(stream),
    ".yaml": lambda stream: yaml.safe_load(stream),
    ".yml": lambda stream: yaml.safe_load(stream),
}
"""Mapping of file suffixes to loader callables, in lookup priority order."""

PARSE_ERRORS: tuple[type[Exception], ...] = (
    json.JSONDecodeError,
    tomllib.TOMLDecodeError,
    yaml.YAMLError,
    UnicodeDecodeError,
    TypeError,
)
"""Exceptions raised by :func:`load_config_file` for malformed documents."""


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Load and decode a configuration mapping from ``path``."""

    suffix = path.suffix.lower()
    loader = FILE_LOADERS.get(suffix)
    if loader is None:
        supported = ", ".join(sorted(FILE_LOADERS)) or "<none>"
        raise ValueError(
            f"Unsupported configuration file extension: {suffix}. Supported: {supported}"
        )

    mode = "rb" if suffix == ".toml" else "r"
    kwargs: Dict[str, Any] = {}
    if mode == "r":
        kwargs["encoding"] = "utf-8"

    with path.open(mode, **kwargs) as handle:
        data = loader(handle)

    if not isinstance(data, Mapping):
        raise TypeError(f"Configuration file '{path}' must contain a mapping at the root")

    return data


def find_config_file(directory: Path, stem: str) -> Path | None:
    """Return the first ``<stem><suffix>`` file in ``directory`` for a known suffix."""

    for suffix in FILE_LOADERS:
        candidate = directory / f"{stem}{suffix}"
        if candidate.is_file():
            return candidate
    return None


def merge_mappings(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
    *,
    overwrite: bool = True,
) -> Dict[str, Any]:
    """Deep merge two mapping objects.

    Nested mappings are merged key by key. Any other value, lists included,
    is taken as a whole. With ``overwrite`` (the default) values from
    ``overlay`` replace values in ``base``; without it ``base`` keeps every
    key it already has and ``overlay`` only fills the gaps.
    """

    result: Dict[str, Any] = dict(base)
    for key, value in overlay.items():
        existing = result.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            result[key] = merge_mappings(existing, value, overwrite=overwrite)
        elif overwrite or key not in result:
            result[key] = value
    return result


def normalize_string_list(value: Any, *, field_name: str | None = None) -> List[str]:
    """Coerce ``value`` into a list of trimmed strings."""

    if value is None:
        return []

    if isinstance(value, (str, bytes)):
        text = str(value).strip()
        return [text] if text else []

    if isinstance(value, Sequence):
        items: List[str] = []
        for item in value:
            if not isinstance(item, (str, bytes)):
                label = f"{field_name} " if field_name else ""
                raise TypeError(f"{label}entries must be strings")
            text = str(item).strip()
            if text:
                items.append(text)
        return items

    label = f"{field_name} " if field_name else ""
    raise TypeError(f"{label}must be a string or sequence of strings")


def normalize_string_mapping(value: Any, *, field_name: str | None = None) -> Dict[str, str]:
    """Coerce ``value`` into a ``str -> str`` mapping (environment tables)."""

    if value is None:
        return {}
    if not isinstance(value, Mapping):
        label = f"{field_name} " if field_name else ""
        raise TypeError(f"{label}must be a mapping")
    return {str(key): str(item) for key, item in value.items()}


__all__ = [
    "ConfigLoader",
    "FILE_LOADERS",
    "PARSE_ERRORS",
    "find_config_file",
    "load_config_file",
    "merge_mappings",
    "normalize_string_list",
    "normalize_string_mapping",
]
