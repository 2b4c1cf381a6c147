"""Project-aware task dispatcher: configure, build, run, debug and test from any project directory."""

from .context import AppContext, Console, create_app_context
from .dispatcher import DispatchResult, DispatchStatus, TaskDispatcher
from .cli import main

__all__ = [
    "AppContext",
    "Console",
    "DispatchResult",
    "DispatchStatus",
    "TaskDispatcher",
    "create_app_context",
    "main",
]
