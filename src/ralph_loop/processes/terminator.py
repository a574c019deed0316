from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from ..logging_utils import log_event
from .controller import FAILED, KILLED, KillAttempt, ProcessController
from .registry import ProcessRegistry

_logger = logging.getLogger(__name__)

SETTLE_DELAY_SECONDS = 0.1
VERIFY_DELAY_SECONDS = 0.2


@dataclass
class CleanupResult:
    terminated_pids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    attempts: list[KillAttempt] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class Terminator:
    """Make sure nothing this run spawned outlives it.

    Shutdown runs in three passes:

    1. kill every registered PID's tree directly; this does not depend on
       parent/child links still being intact;
    2. after a settle delay, kill the subtree of each remaining direct child
       of this process (whole subtrees, so a supervisor cannot respawn the
       grandchildren we just killed);
    3. after another delay, direct-kill anything still alive and report each
       survivor as an individual error.
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        controller: ProcessController,
        *,
        root_pid: Optional[int] = None,
        settle_delay: float = SETTLE_DELAY_SECONDS,
        verify_delay: float = VERIFY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._controller = controller
        self._root_pid = root_pid if root_pid is not None else os.getpid()
        self._settle_delay = settle_delay
        self._verify_delay = verify_delay
        self._sleep = sleep

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    def confirm_exited(self, pid: int) -> bool:
        """Drop pid from the registry once it and its process group are gone."""
        if self._is_alive(pid) or self._group_alive(pid):
            return False
        return self._registry.unregister(pid)

    def _record(self, result: CleanupResult, attempt: KillAttempt, stage: str) -> None:
        result.attempts.append(attempt)
        if attempt.outcome == KILLED and attempt.pid not in result.terminated_pids:
            result.terminated_pids.append(attempt.pid)
        log_event(
            _logger,
            logging.INFO if attempt.ok else logging.WARNING,
            "cleanup.attempt",
            stage=stage,
            pid=attempt.pid,
            method=attempt.method,
            outcome=attempt.outcome,
            error=attempt.error,
        )

    def _candidates(self, pids: list[int]) -> list[int]:
        excluded = self._controller.utility_pids | {self._root_pid}
        return [pid for pid in pids if pid not in excluded]

    def _kill_tree(self, pid: int, result: CleanupResult, stage: str) -> None:
        try:
            attempt = self._controller.kill_tree(pid)
        except Exception as exc:
            attempt = KillAttempt(pid, "kill_tree", FAILED, str(exc))
        self._record(result, attempt, stage)

    def _kill(self, pid: int, result: CleanupResult, stage: str) -> None:
        try:
            attempt = self._controller.kill(pid)
        except Exception as exc:
            attempt = KillAttempt(pid, "kill", FAILED, str(exc))
        self._record(result, attempt, stage)

    def _is_alive(self, pid: int) -> bool:
        try:
            return self._controller.is_alive(pid)
        except Exception:
            return True

    def _group_alive(self, pid: int) -> bool:
        try:
            return self._controller.group_alive(pid)
        except Exception:
            return True

    def _enumerate(self, direct_only: bool) -> list[int]:
        try:
            if direct_only:
                return self._controller.direct_children(self._root_pid)
            return self._controller.descendants(self._root_pid)
        except Exception as exc:
            log_event(_logger, logging.WARNING, "cleanup.enumerate.failed", exc=exc)
            return []

    def _unregister_dead(self) -> None:
        for pid in self._registry.pids():
            if not self._is_alive(pid) and not self._group_alive(pid):
                self._registry.unregister(pid)

    async def shutdown(self) -> CleanupResult:
        result = CleanupResult()
        handled: set[int] = set()

        registered = self._candidates(self._registry.pids())
        log_event(_logger, logging.INFO, "cleanup.start", registered=registered)
        for pid in registered:
            self._kill_tree(pid, result, "registered")
            handled.add(pid)
        self._unregister_dead()

        await self._sleep(self._settle_delay)
        stragglers = [
            pid
            for pid in self._candidates(self._enumerate(direct_only=True))
            if pid not in handled
        ]
        for pid in stragglers:
            self._kill_tree(pid, result, "children")
            handled.add(pid)

        await self._sleep(self._verify_delay)
        remaining = set(self._candidates(self._enumerate(direct_only=False)))
        remaining.update(self._candidates(self._registry.pids()))
        survivors = sorted(pid for pid in remaining if self._is_alive(pid))
        groups = sorted(
            pid
            for pid in self._candidates(self._registry.pids())
            if pid not in survivors and self._group_alive(pid)
        )
        for pid in survivors:
            self._kill(pid, result, "verify")
        for pid in groups:
            self._kill_tree(pid, result, "verify")
        if survivors or groups:
            await self._sleep(self._settle_delay)
        for pid in survivors:
            if self._is_alive(pid):
                result.errors.append(f"PID {pid} survived termination")
        for pid in groups:
            if self._group_alive(pid):
                result.errors.append(f"Process group {pid} survived termination")
        self._unregister_dead()

        log_event(
            _logger,
            logging.INFO if result.success else logging.WARNING,
            "cleanup.done",
            terminated=result.terminated_pids,
            errors=result.errors,
            attempts=len(result.attempts),
        )
        return result
