import json
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import psutil

from .errors import RalphError
from .utils import atomic_write


class LockError(RalphError):
    pass


@dataclass
class LockInfo:
    pid: Optional[int]
    started_at: Optional[str]
    host: Optional[str]


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def process_alive(pid: int) -> bool:
    try:
        return psutil.pid_exists(pid)
    except (OSError, ValueError):
        return False


def read_lock_info(lock_path: Path) -> LockInfo:
    if not lock_path.exists():
        return LockInfo(pid=None, started_at=None, host=None)
    try:
        text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return LockInfo(pid=None, started_at=None, host=None)
    if not text:
        return LockInfo(pid=None, started_at=None, host=None)
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return LockInfo(pid=None, started_at=None, host=None)
        pid = payload.get("pid")
        return LockInfo(
            pid=int(pid) if isinstance(pid, int) or str(pid).isdigit() else None,
            started_at=payload.get("started_at"),
            host=payload.get("host"),
        )
    pid = int(text) if text.isdigit() else None
    return LockInfo(pid=pid, started_at=None, host=None)


def write_lock_info(lock_path: Path, pid: int, *, started_at: str) -> None:
    payload = {
        "pid": pid,
        "started_at": started_at,
        "host": socket.gethostname(),
    }
    atomic_write(lock_path, json.dumps(payload) + "\n")


class RunLock:
    """Single-run guard for a project directory."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False

    def acquire(self, force: bool = False) -> None:
        if self.path.exists():
            info = read_lock_info(self.path)
            pid = info.pid
            if pid and pid != os.getpid() and process_alive(pid):
                if not force:
                    raise LockError(
                        f"Another ralph run is active (pid={pid}); use --force to override"
                    )
            else:
                self.path.unlink(missing_ok=True)
        write_lock_info(self.path, os.getpid(), started_at=now_iso())
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        info = read_lock_info(self.path)
        if info.pid in (None, os.getpid()):
            self.path.unlink(missing_ok=True)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
