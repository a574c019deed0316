"""Pause and done signalling between the loop and the outside world.

Production runs use sentinel files in the project directory (``.ralph-pause``,
``.ralph-done``); the operator or the agent itself creates them and the loop
only observes and deletes. Tests swap in :class:`MemorySignal`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .utils import atomic_write

PAUSE_FILENAME = ".ralph-pause"
DONE_FILENAME = ".ralph-done"

_logger = logging.getLogger(__name__)


class SignalChannel(Protocol):
    def is_set(self) -> bool: ...

    def clear(self) -> None: ...

    def set(self, payload: str = "") -> None: ...


class FileSignal:
    """A signal whose state is the presence of a file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def is_set(self) -> bool:
        try:
            return self.path.exists()
        except OSError:
            return False

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            _logger.warning("Failed to remove %s: %s", self.path, exc)

    def set(self, payload: str = "") -> None:
        # Operator side (interrupt menu, `ralph pause`); the loop never calls it.
        atomic_write(self.path, payload)

    def __repr__(self) -> str:
        return f"FileSignal({str(self.path)!r})"


class MemorySignal:
    def __init__(self, value: bool = False) -> None:
        self._value = value
        self.clear_calls = 0

    def is_set(self) -> bool:
        return self._value

    def clear(self) -> None:
        self.clear_calls += 1
        self._value = False

    def set(self, payload: str = "") -> None:
        self._value = True


@dataclass
class ControlChannel:
    pause: SignalChannel
    done: SignalChannel

    @classmethod
    def for_directory(cls, root: Path) -> ControlChannel:
        return cls(
            pause=FileSignal(root / PAUSE_FILENAME),
            done=FileSignal(root / DONE_FILENAME),
        )

    @classmethod
    def in_memory(cls) -> ControlChannel:
        return cls(pause=MemorySignal(), done=MemorySignal())
