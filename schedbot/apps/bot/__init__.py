"""Chat-facing scheduling services: votes, reminders, notifications and display updates."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "build_services",
    "start_background",
    "VoteCoordinator",
    "ReminderSweep",
    "NotificationDispatcher",
    "MessageUpdateCoalescer",
]

_EXPORTS = {
    "build_services": ".bootstrap",
    "start_background": ".bootstrap",
    "VoteCoordinator": ".votes",
    "ReminderSweep": ".reminders",
    "NotificationDispatcher": ".notifications",
    "MessageUpdateCoalescer": ".coalescer",
}


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(name)
    attr = getattr(import_module(module_name, __name__), name)
    globals()[name] = attr
    return attr


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
