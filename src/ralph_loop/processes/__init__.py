from .controller import (
    KillAttempt,
    PosixProcessController,
    ProcessController,
    WindowsProcessController,
    create_process_controller,
)
from .registry import ProcessRegistry
from .terminator import CleanupResult, Terminator

__all__ = [
    "CleanupResult",
    "KillAttempt",
    "PosixProcessController",
    "ProcessController",
    "ProcessRegistry",
    "Terminator",
    "WindowsProcessController",
    "create_process_controller",
]
