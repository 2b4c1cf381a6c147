"""Shared core utilities for command execution, configuration and macro expansion."""

from .template import expand_args, expand_macros, expand_variables, extract_macros
from .command_runner import (
    CommandError,
    CommandResult,
    CommandRunner,
    RecordingCommandRunner,
    RunningCommand,
    SubprocessCommandRunner,
)
from .config_loader import (
    ConfigLoader,
    FILE_LOADERS,
    PARSE_ERRORS,
    find_config_file,
    load_config_file,
    merge_mappings,
    normalize_string_list,
    normalize_string_mapping,
)

__all__ = [
    "expand_args",
    "expand_macros",
    "expand_variables",
    "extract_macros",
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "RecordingCommandRunner",
    "RunningCommand",
    "SubprocessCommandRunner",
    "ConfigLoader",
    "FILE_LOADERS",
    "PARSE_ERRORS",
    "find_config_file",
    "load_config_file",
    "merge_mappings",
    "normalize_string_list",
    "normalize_string_mapping",
]
