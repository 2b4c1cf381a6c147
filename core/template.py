"""Macro expansion for ``${name}`` placeholders.

Two policies share the same placeholder syntax:

* :func:`expand_macros` keeps unknown references visible (``${unknown}``
  stays in the output). Preset documents rely on this.
* :func:`expand_variables` and :func:`expand_args` erase unknown references;
  the argument form also drops arguments that end up empty so an unset
  variable never turns into a spurious empty command line argument.
"""
from __future__ import annotations

from typing import Any, Iterable, List, Mapping
import re


_MACRO_PATTERN = re.compile(r"\$\{([^}]+)\}")


def expand_macros(text: str, variables: Mapping[str, Any]) -> str:
    """Replace known ``${name}`` references in ``text`` and keep unknown ones."""

    if "${" not in text:
        return text

    def replacement(match: re.Match[str]) -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            return match.group(0)
        return str(value)

    return _MACRO_PATTERN.sub(replacement, text)


def expand_variables(text: str, variables: Mapping[str, Any]) -> str:
    """Replace every ``${name}`` reference in ``text``; unknown names become ``""``."""

    if "${" not in text:
        return text

    def replacement(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return ""
        return str(value)

    return _MACRO_PATTERN.sub(replacement, text)


def expand_args(template: Iterable[str], variables: Mapping[str, Any]) -> List[str]:
    """Expand a command template, dropping arguments that expand to nothing."""

    expanded: List[str] = []
    for part in template:
        value = expand_variables(part, variables)
        if value != "":
            expanded.append(value)
    return expanded


def extract_macros(value: Any) -> set[str]:
    """Collect all macro names referenced within *value*."""

    names: set[str] = set()

    def _collect(obj: Any) -> None:
        if isinstance(obj, str):
            for match in _MACRO_PATTERN.finditer(obj):
                name = match.group(1).strip()
                if name:
                    names.add(name)
            return
        if isinstance(obj, Mapping):
            for item in obj.values():
                _collect(item)
            return
        if isinstance(obj, (list, tuple)):
            for item in obj:
                _collect(item)

    _collect(value)
    return names


__all__ = [
    "expand_args",
    "expand_macros",
    "expand_variables",
    "extract_macros",
]
