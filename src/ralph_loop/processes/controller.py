"""Per-OS process tree enumeration and termination.

One :class:`ProcessController` is picked at construction time by
:func:`create_process_controller`; callers never branch on the platform.
"""

from __future__ import annotations

import abc
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Iterable, Optional

import psutil

from ..logging_utils import log_event

_logger = logging.getLogger(__name__)

KILLED = "killed"
GONE = "gone"
FAILED = "failed"

# Helpers Windows process control may itself spawn.
WINDOWS_UTILITY_NAMES = frozenset(
    {"taskkill.exe", "wmic.exe", "powershell.exe", "conhost.exe", "cmd.exe"}
)


@dataclass(frozen=True)
class KillAttempt:
    pid: int
    method: str
    outcome: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (KILLED, GONE)


def _process(pid: int) -> Optional[psutil.Process]:
    try:
        return psutil.Process(pid)
    except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError):
        return None


def _is_zombie(proc: psutil.Process) -> bool:
    try:
        return proc.status() == psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


class ProcessController(abc.ABC):
    """Enumerate and kill processes; every operation is best effort."""

    def __init__(self) -> None:
        self._utility_pids: set[int] = set()

    @property
    def utility_pids(self) -> frozenset[int]:
        """PIDs of helper processes this controller spawned itself."""
        return frozenset(self._utility_pids)

    def is_utility(self, proc: psutil.Process) -> bool:
        return proc.pid in self._utility_pids

    def _live_children(self, pid: int, *, recursive: bool) -> list[int]:
        proc = _process(pid)
        if proc is None:
            return []
        try:
            children = proc.children(recursive=recursive)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []
        pids: list[int] = []
        for child in children:
            if _is_zombie(child) or self.is_utility(child):
                continue
            pids.append(child.pid)
        return pids

    def direct_children(self, pid: int) -> list[int]:
        return self._live_children(pid, recursive=False)

    def descendants(self, pid: int) -> list[int]:
        return self._live_children(pid, recursive=True)

    def is_alive(self, pid: int) -> bool:
        proc = _process(pid)
        if proc is None:
            return False
        try:
            return proc.is_running() and not _is_zombie(proc)
        except psutil.NoSuchProcess:
            return False

    def kill(self, pid: int) -> KillAttempt:
        proc = _process(pid)
        if proc is None:
            return KillAttempt(pid, "kill", GONE)
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            return KillAttempt(pid, "kill", GONE)
        except (psutil.AccessDenied, OSError) as exc:
            return KillAttempt(pid, "kill", FAILED, str(exc))
        return KillAttempt(pid, "kill", KILLED)

    def group_alive(self, pgid: int) -> bool:
        """True while any member of the process group led by pgid lives."""
        return False

    @abc.abstractmethod
    def kill_tree(self, pid: int) -> KillAttempt:
        """Kill pid together with everything below it."""

    def find_pid_by_port(self, port: int) -> Optional[int]:
        """PID listening on a local TCP port, if any."""
        try:
            connections: Iterable = psutil.net_connections(kind="tcp")
        except (psutil.AccessDenied, OSError):
            return self._scan_port_per_process(port)
        for conn in connections:
            if (
                conn.laddr
                and conn.laddr.port == port
                and conn.status == psutil.CONN_LISTEN
                and conn.pid
            ):
                return int(conn.pid)
        return None

    def _scan_port_per_process(self, port: int) -> Optional[int]:
        # macOS refuses system-wide connection listing without root.
        for proc in psutil.process_iter(["pid"]):
            try:
                getter = getattr(proc, "net_connections", None) or proc.connections
                for conn in getter(kind="tcp"):
                    if (
                        conn.laddr
                        and conn.laddr.port == port
                        and conn.status == psutil.CONN_LISTEN
                    ):
                        return proc.pid
            except (psutil.NoSuchProcess, psutil.AccessDenied, OSError):
                continue
        return None


class PosixProcessController(ProcessController):
    def group_alive(self, pgid: int) -> bool:
        if pgid <= 0 or pgid == os.getpgid(0):
            return False
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            pass
        # killpg also reaches zombies nobody has reaped yet.
        for proc in psutil.process_iter():
            try:
                if os.getpgid(proc.pid) == pgid and not _is_zombie(proc):
                    return True
            except (OSError, psutil.Error):
                continue
        return False

    def _kill_orphaned_group(self, pgid: int) -> KillAttempt:
        # The leader is gone but its children keep the group id alive.
        if not self.group_alive(pgid):
            return KillAttempt(pgid, "killpg", GONE)
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            return KillAttempt(pgid, "killpg", GONE)
        except OSError as exc:
            return KillAttempt(pgid, "killpg", FAILED, str(exc))
        return KillAttempt(pgid, "killpg", KILLED)

    def kill_tree(self, pid: int) -> KillAttempt:
        try:
            pgid = os.getpgid(pid)
        except ProcessLookupError:
            return self._kill_orphaned_group(pid)
        except OSError as exc:
            return KillAttempt(pid, "killpg", FAILED, str(exc))
        # Backends are spawned with start_new_session=True, so they lead a group.
        if pgid == pid and pgid != os.getpgid(0):
            try:
                os.killpg(pgid, signal.SIGKILL)
                return KillAttempt(pid, "killpg", KILLED)
            except ProcessLookupError:
                return KillAttempt(pid, "killpg", GONE)
            except OSError as exc:
                log_event(
                    _logger,
                    logging.DEBUG,
                    "process.killpg.failed",
                    pid=pid,
                    exc=exc,
                )
        return self._kill_subtree(pid)

    def _kill_subtree(self, pid: int) -> KillAttempt:
        proc = _process(pid)
        if proc is None:
            return KillAttempt(pid, "subtree", GONE)
        try:
            # Stop the parent first so it cannot respawn children we kill.
            proc.suspend()
        except psutil.NoSuchProcess:
            return KillAttempt(pid, "subtree", GONE)
        except (psutil.AccessDenied, OSError):
            pass
        try:
            children = proc.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        for child in children:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            return KillAttempt(pid, "subtree", GONE)
        except (psutil.AccessDenied, OSError) as exc:
            return KillAttempt(pid, "subtree", FAILED, str(exc))
        return KillAttempt(pid, "subtree", KILLED)


class WindowsProcessController(ProcessController):
    def __init__(self, *, taskkill_timeout: float = 10.0) -> None:
        super().__init__()
        self._taskkill_timeout = taskkill_timeout

    def is_utility(self, proc: psutil.Process) -> bool:
        if super().is_utility(proc):
            return True
        try:
            return proc.name().lower() in WINDOWS_UTILITY_NAMES
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def kill_tree(self, pid: int) -> KillAttempt:
        try:
            helper = subprocess.Popen(
                ["taskkill", "/F", "/T", "/PID", str(pid)],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            log_event(
                _logger, logging.WARNING, "process.taskkill.unavailable", pid=pid, exc=exc
            )
            return self._kill_subtree_psutil(pid)
        self._utility_pids.add(helper.pid)
        try:
            _, stderr = helper.communicate(timeout=self._taskkill_timeout)
        except subprocess.TimeoutExpired:
            helper.kill()
            helper.communicate()
            return self._kill_subtree_psutil(pid)
        finally:
            self._utility_pids.discard(helper.pid)
        if helper.returncode == 0:
            return KillAttempt(pid, "taskkill", KILLED)
        # 128: process not found.
        if helper.returncode == 128 or "not found" in (stderr or "").lower():
            return KillAttempt(pid, "taskkill", GONE)
        return self._kill_subtree_psutil(pid)

    def _kill_subtree_psutil(self, pid: int) -> KillAttempt:
        proc = _process(pid)
        if proc is None:
            return KillAttempt(pid, "subtree", GONE)
        try:
            children = proc.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except (psutil.AccessDenied, OSError) as exc:
            return KillAttempt(pid, "subtree", FAILED, str(exc))
        for child in children:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        return KillAttempt(pid, "subtree", KILLED)


def create_process_controller(platform: Optional[str] = None) -> ProcessController:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return WindowsProcessController()
    return PosixProcessController()
