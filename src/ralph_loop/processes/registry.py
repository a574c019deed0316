from __future__ import annotations

import logging
import threading

from ..logging_utils import log_event

_logger = logging.getLogger(__name__)


class ProcessRegistry:
    """PIDs this run spawned and must terminate before exit.

    Additions come from the session manager at spawn time; removals come from
    the terminator once a process is confirmed gone.
    """

    def __init__(self) -> None:
        self._pids: set[int] = set()
        self._lock = threading.Lock()

    def register(self, pid: int) -> bool:
        if pid <= 0:
            return False
        with self._lock:
            if pid in self._pids:
                return False
            self._pids.add(pid)
        log_event(_logger, logging.INFO, "process.registered", pid=pid)
        return True

    def unregister(self, pid: int) -> bool:
        with self._lock:
            if pid not in self._pids:
                return False
            self._pids.discard(pid)
        log_event(_logger, logging.INFO, "process.unregistered", pid=pid)
        return True

    def pids(self) -> list[int]:
        with self._lock:
            return sorted(self._pids)

    def clear(self) -> None:
        with self._lock:
            self._pids.clear()

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._pids

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids)
