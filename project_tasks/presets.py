"""CMake presets parsing and File API target discovery."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, MutableMapping, Sequence, Tuple
import copy
import json
import platform
import re

from core.config_loader import merge_mappings
from core.template import expand_macros

if TYPE_CHECKING:  # pragma: no cover
    from .context import Console


BASE_PRESETS_FILE = "CMakePresets.json"
USER_PRESETS_FILE = "CMakeUserPresets.json"

DEFAULT_BINARY_DIR = "build/${presetName}"

QUERY_CLIENT = "client-project-tasks"
QUERY_KINDS = ("codemodel-v2", "cache-v2", "toolchains-v1")

_INDEX_PATTERN = re.compile(r"^index-.*\.json$")


@dataclass(slots=True)
class ConfigurePreset:
    name: str
    binary_dir: str | None
    display_name: str | None = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConfigurePreset":
        display_name = data.get("displayName")
        binary_dir = data.get("binaryDir")
        return cls(
            name=str(data["name"]),
            binary_dir=str(binary_dir) if binary_dir else None,
            display_name=str(display_name) if display_name else None,
            data=dict(data),
        )

    def label(self) -> str:
        if self.display_name:
            return f"{self.name} - {self.display_name}"
        return self.name


@dataclass(slots=True)
class BuildPreset:
    name: str
    configure_preset: str | None = None
    display_name: str | None = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BuildPreset":
        configure_preset = data.get("configurePreset")
        display_name = data.get("displayName")
        return cls(
            name=str(data["name"]),
            configure_preset=str(configure_preset) if configure_preset else None,
            display_name=str(display_name) if display_name else None,
            data=dict(data),
        )

    def label(self) -> str:
        if self.display_name:
            return f"{self.name} - {self.display_name}"
        return self.name


@dataclass(slots=True)
class Target:
    name: str
    path: str | None
    type: str = "EXECUTABLE"
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class _RawDocuments:
    base: Mapping[str, Any] | None
    user: Mapping[str, Any] | None

    def documents(self) -> List[Mapping[str, Any]]:
        return [data for data in (self.base, self.user) if data is not None]


class PresetStore:
    """Loads ``CMakePresets.json``/``CMakeUserPresets.json`` with a per-root cache."""

    def __init__(self, console: "Console | None" = None) -> None:
        self._console = console
        self._cache: Dict[str, _RawDocuments] = {}

    def invalidate(self, root: Path | str | None = None) -> None:
        if root is None:
            self._cache.clear()
        else:
            self._cache.pop(str(Path(root)), None)

    def read_presets_file(self, path: Path) -> Mapping[str, Any] | None:
        if not path.is_file():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            self._warn(f"Failed to parse: {path} ({exc})")
            return None
        if not isinstance(data, Mapping):
            self._warn(f"Failed to parse: {path} (expected a JSON object)")
            return None
        return data

    def load(self, root: Path | str) -> List[ConfigurePreset] | None:
        root_path = Path(root)
        base = self.read_presets_file(root_path / BASE_PRESETS_FILE)
        user = self.read_presets_file(root_path / USER_PRESETS_FILE)
        if base is None and user is None:
            return None

        presets_map: Dict[str, Mapping[str, Any]] = {}
        if base is not None:
            merge_presets(presets_map, base, "configure")
        if user is not None:
            merge_presets(presets_map, user, "configure")

        presets: List[ConfigurePreset] = []
        for preset in presets_map.values():
            if preset.get("hidden"):
                continue
            resolved = resolve_preset(preset, presets_map, root_path)
            presets.append(ConfigurePreset.from_mapping(resolved))
        presets.sort(key=lambda item: item.name)

        self._cache[str(root_path)] = _RawDocuments(base=base, user=user)
        return presets

    def _cached(self, root: Path | str) -> _RawDocuments | None:
        key = str(Path(root))
        if key not in self._cache:
            self.load(root)
        return self._cache.get(key)

    def has_build_preset(self, root: Path | str) -> bool:
        cached = self._cached(root)
        if cached is None:
            return False
        for data in cached.documents():
            build_presets = data.get("buildPresets")
            if isinstance(build_presets, Sequence) and not isinstance(build_presets, str) and len(build_presets) > 0:
                return True
        return False

    def get_build_presets(self, root: Path | str, configure_preset: str | None = None) -> List[BuildPreset]:
        cached = self._cached(root)
        if cached is None:
            return []

        build_presets: List[BuildPreset] = []
        for data in cached.documents():
            for entry in _preset_entries(data, "buildPresets"):
                if configure_preset is not None and entry.get("configurePreset") != configure_preset:
                    continue
                build_presets.append(BuildPreset.from_mapping(entry))
        return build_presets

    def get_targets(self, root: Path | str, binary_dir: str | None) -> List[Target] | None:
        """Executable targets from the CMake File API reply for ``binary_dir``.

        Returns ``None`` when there is no reply yet; in that case query files are
        written so the next configure run generates one.
        """

        if not binary_dir:
            return None

        build_path = Path(binary_dir)
        if not build_path.is_absolute():
            build_path = Path(root) / build_path

        reply_dir = build_path / ".cmake" / "api" / "v1" / "reply"
        index_path = find_reply_index(reply_dir)
        if index_path is None:
            setup_query(build_path)
            return None

        return parse_codemodel(reply_dir, index_path)

    def _warn(self, message: str) -> None:
        if self._console is not None:
            self._console.warn(message)


def _preset_entries(data: Mapping[str, Any], key: str) -> List[Mapping[str, Any]]:
    entries = data.get(key)
    if not isinstance(entries, Sequence) or isinstance(entries, str):
        return []
    return [entry for entry in entries if isinstance(entry, Mapping) and entry.get("name")]


def merge_presets(presets_map: MutableMapping[str, Mapping[str, Any]], data: Mapping[str, Any], preset_type: str) -> None:
    """Add ``<preset_type>Presets`` entries of ``data`` to the map; later entries replace earlier ones."""

    for preset in _preset_entries(data, f"{preset_type}Presets"):
        presets_map[str(preset["name"])] = preset


def resolve_preset(preset: Mapping[str, Any], all_presets: Mapping[str, Mapping[str, Any]], root: Path) -> Dict[str, Any]:
    """Resolve inheritance, default ``binaryDir`` and expand its macros.

    Macros expand against the preset's own name, never an ancestor's.
    """

    resolved = resolve_inheritance(preset, all_presets, set())

    if not resolved.get("binaryDir"):
        resolved["binaryDir"] = DEFAULT_BINARY_DIR

    binary_dir = resolved["binaryDir"]
    if isinstance(binary_dir, str):
        resolved["binaryDir"] = expand_macros(binary_dir, _macro_variables(resolved, root))

    return resolved


def _macro_variables(preset: Mapping[str, Any], root: Path) -> Dict[str, str]:
    variables = {
        "sourceDir": str(root),
        "sourceParentDir": str(root.parent),
        "sourceDirName": root.name,
        "presetName": str(preset.get("name", "")),
        "hostSystemName": platform.system(),
        "dollar": "$",
    }
    generator = preset.get("generator")
    if isinstance(generator, str):
        variables["generator"] = generator
    return variables


def resolve_inheritance(
    preset: Mapping[str, Any],
    all_presets: Mapping[str, Mapping[str, Any]],
    visited: set[str],
) -> Dict[str, Any]:
    """Merge every ancestor under ``preset``; the child's own fields always win.

    ``inherits`` may name one parent or a list; earlier parents take priority
    over later ones. A name seen once during a resolution is not expanded
    again, which is what stops inheritance cycles.
    """

    resolved: Dict[str, Any] = copy.deepcopy(dict(preset))

    name = str(preset.get("name", ""))
    if name in visited:
        return resolved
    visited.add(name)

    inherits = preset.get("inherits")
    if isinstance(inherits, str):
        parents = [inherits]
    elif isinstance(inherits, list):
        parents = inherits
    else:
        return resolved

    for parent_name in parents:
        parent = all_presets.get(str(parent_name))
        if parent is None:
            continue
        resolved_parent = resolve_inheritance(parent, all_presets, visited)
        # hidden only applies to the preset that declares it
        resolved_parent.pop("hidden", None)
        resolved = merge_mappings(resolved, resolved_parent, overwrite=False)

    return resolved


def find_reply_index(reply_dir: Path) -> Path | None:
    """Return the lexicographically greatest ``index-*.json`` in ``reply_dir``."""

    if not reply_dir.is_dir():
        return None
    try:
        names = [entry.name for entry in reply_dir.iterdir() if _INDEX_PATTERN.match(entry.name)]
    except OSError:
        return None
    if not names:
        return None
    return reply_dir / max(names)


def setup_query(binary_dir: Path) -> None:
    """Request codemodel, cache and toolchain replies on the next configure run."""

    query_dir = binary_dir / ".cmake" / "api" / "v1" / "query" / QUERY_CLIENT
    try:
        query_dir.mkdir(parents=True, exist_ok=True)
        for kind in QUERY_KINDS:
            (query_dir / kind).touch()
    except OSError:
        return


def _read_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError):
        return None


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def parse_codemodel(reply_dir: Path, index_path: Path) -> List[Target]:
    targets: List[Target] = []

    index = _read_json(index_path)
    if not isinstance(index, Mapping):
        return targets

    codemodel_file: Path | None = None
    for obj in _list(index.get("objects")):
        if isinstance(obj, Mapping) and obj.get("kind") == "codemodel" and obj.get("jsonFile"):
            codemodel_file = reply_dir / str(obj["jsonFile"])
            break
    if codemodel_file is None:
        return targets

    codemodel = _read_json(codemodel_file)
    if not isinstance(codemodel, Mapping):
        return targets

    for configuration in _list(codemodel.get("configurations")):
        if not isinstance(configuration, Mapping):
            continue
        for target_ref in _list(configuration.get("targets")):
            if not isinstance(target_ref, Mapping) or not target_ref.get("jsonFile"):
                continue
            target = parse_target(reply_dir / str(target_ref["jsonFile"]), reply_dir)
            if target is not None and target.type == "EXECUTABLE":
                targets.append(target)

    return targets


def parse_target(path: Path, reply_dir: Path) -> Target | None:
    data = _read_json(path)
    if not isinstance(data, Mapping) or not data.get("name"):
        return None

    artifact_path: str | None = None
    artifacts = data.get("artifacts")
    if isinstance(artifacts, Sequence) and artifacts and isinstance(artifacts[0], Mapping):
        raw_path = artifacts[0].get("path")
        if raw_path:
            artifact_path = str(raw_path)
            if not Path(artifact_path).is_absolute():
                # reply -> v1 -> api -> .cmake -> build directory
                build_dir = reply_dir.parents[3]
                artifact_path = str(build_dir / artifact_path)

    return Target(name=str(data["name"]), path=artifact_path, type=str(data.get("type", "")))
