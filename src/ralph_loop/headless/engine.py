"""Headless driver around :class:`~ralph_loop.loop.IterationLoop`.

The engine gates the start, enforces run limits, turns loop callbacks into
:mod:`ralph_loop.events` values for the output sink and listeners, handles
interrupts and always runs process cleanup before reporting an exit code.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import os
import signal
import sys
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Optional

import typer

from ..agents.base import TokensReported
from ..config import CleanupConfig, LimitsConfig
from ..control import ControlChannel
from ..events import (
    ActiveAgentEvent,
    AdapterModeEvent,
    BackoffClearedEvent,
    BackoffEvent,
    CompleteEvent,
    ErrorEvent,
    IdleEvent,
    IterationEndEvent,
    IterationStartEvent,
    LoopEvent,
    ModelEvent,
    OutputEvent,
    PauseEvent,
    PlanModifiedEvent,
    ProgressEvent,
    PromptEvent,
    RateLimitEvent,
    ResumeEvent,
    RunSummary,
    SandboxEvent,
    SessionEvent,
    StartEvent,
    StatsEvent,
    TokensEvent,
)
from ..logging_utils import log_event
from ..loop import IterationLoop, LoopCallbacks, LoopPhase
from ..processes import CleanupResult, Terminator
from ..sessions import AgentSession, SandboxInfo
from ..state import PersistedState
from ..utils import now_ms
from .interrupt import (
    InterruptMenu,
    KeyReader,
    MenuChoice,
    is_ci,
    read_key,
    wait_for_quit,
    wait_for_start,
)
from .output import OutputSink, Writer
from .requirements import check_requirements, format_requirements_error

_logger = logging.getLogger(__name__)

EventHandler = Callable[[LoopEvent], None]

ANY_EVENT = "*"


def _stderr_write(text: str) -> None:
    # Prompts stay off stdout so json/jsonl output remains parseable.
    typer.echo(text, nl=False, err=True)


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    INTERRUPTED = 2
    LIMIT_REACHED = 3


class HeadlessEngine(LoopCallbacks):
    def __init__(
        self,
        output: OutputSink,
        *,
        root: Path,
        control: Optional[ControlChannel] = None,
        terminator: Optional[Terminator] = None,
        limits: Optional[LimitsConfig] = None,
        cleanup: Optional[CleanupConfig] = None,
        auto_start: Optional[bool] = True,
        interactive: Optional[bool] = None,
        key_reader: KeyReader = read_key,
        write: Optional[Writer] = None,
        save_state: Optional[Callable[[PersistedState], None]] = None,
        env: Optional[dict[str, str]] = None,
        clock: Callable[[], int] = now_ms,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._output = output
        self._root = root
        self._control = control or ControlChannel.for_directory(root)
        self._terminator = terminator
        self._limits = limits or LimitsConfig()
        self._cleanup = cleanup or CleanupConfig()
        self._auto_start = auto_start
        self._interactive = (
            interactive if interactive is not None else sys.stdin.isatty()
        )
        self._key_reader = key_reader
        self._write = write or _stderr_write
        self._save_state = save_state
        self._env = os.environ if env is None else env
        self._clock = clock
        self._logger = logger or _logger
        self._menu = InterruptMenu(self._write, key_reader=key_reader)
        self._listeners: dict[str, list[EventHandler]] = {}
        self._abort = asyncio.Event()
        self._exit_code: Optional[ExitCode] = None
        self._abort_reason: Optional[str] = None
        self._loop: Optional[IterationLoop] = None
        self._state: Optional[PersistedState] = None
        self._signals: list[int] = []
        self._previous_handlers: dict[int, Any] = {}
        self._menu_task: Optional[asyncio.Task[None]] = None
        self._iterations = 0
        self._tasks_done = 0
        self._tasks_total = 0
        self._commits = 0
        self._lines_added = 0
        self._lines_removed = 0
        self._last_stats: Optional[tuple[int, int, int]] = None
        self.cleanup_result: Optional[CleanupResult] = None

    # Listeners -----------------------------------------------------------

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register ``handler`` for one event type, or ``"*"`` for all."""
        self._listeners.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._listeners.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event: LoopEvent) -> None:
        if event.timestamp is None:
            event = dataclasses.replace(event, timestamp=self._clock())
        try:
            self._output.emit(event)
        except Exception as exc:
            log_event(
                self._logger, logging.ERROR, "headless.output.failed", event=event.type, exc=exc
            )
        for handler in list(self._listeners.get(event.type, ())) + list(
            self._listeners.get(ANY_EVENT, ())
        ):
            try:
                handler(event)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "headless.listener.failed",
                    event=event.type,
                    exc=exc,
                )

    # Abort ---------------------------------------------------------------

    @property
    def abort_event(self) -> asyncio.Event:
        return self._abort

    @property
    def exit_code(self) -> Optional[ExitCode]:
        return self._exit_code

    def request_abort(self, code: ExitCode, reason: str) -> None:
        """Stop the run. The first caller decides the exit code."""
        if self._exit_code is None:
            self._exit_code = code
            self._abort_reason = reason
            log_event(
                self._logger,
                logging.INFO,
                "headless.abort",
                code=int(code),
                reason=reason,
            )
        self._abort.set()

    # Loop callbacks --------------------------------------------------------

    def on_iteration_start(self, iteration: int) -> None:
        if (
            self._limits.max_iterations is not None
            and self._iterations >= self._limits.max_iterations
        ):
            self.request_abort(
                ExitCode.LIMIT_REACHED,
                f"Max iterations ({self._limits.max_iterations}) reached",
            )
            return
        self.emit(IterationStartEvent(iteration=iteration))

    def on_event(self, event: LoopEvent) -> None:
        self.emit(event)

    def on_iteration_complete(
        self, iteration: int, duration_ms: int, commits: int
    ) -> None:
        self._iterations += 1
        self.emit(
            IterationEndEvent(iteration=iteration, duration_ms=duration_ms, commits=commits)
        )
        if self._state is not None and self._save_state is not None:
            try:
                self._save_state(self._state)
            except OSError as exc:
                log_event(self._logger, logging.ERROR, "headless.state.save_failed", exc=exc)
        if (
            self._limits.max_iterations is not None
            and self._iterations >= self._limits.max_iterations
        ):
            self.request_abort(
                ExitCode.LIMIT_REACHED,
                f"Max iterations ({self._limits.max_iterations}) reached",
            )

    def on_tasks_updated(self, done: int, total: int, error: Optional[str]) -> None:
        self._tasks_done = done
        self._tasks_total = total
        self.emit(ProgressEvent(done=done, total=total))

    def _emit_stats(self) -> None:
        stats = (self._commits, self._lines_added, self._lines_removed)
        if stats == self._last_stats:
            return
        self._last_stats = stats
        self.emit(
            StatsEvent(
                commits=self._commits,
                lines_added=self._lines_added,
                lines_removed=self._lines_removed,
            )
        )

    def on_commits_updated(self, commits: int) -> None:
        self._commits = commits
        self._emit_stats()

    def on_diff_updated(self, added: int, removed: int) -> None:
        self._lines_added = added
        self._lines_removed = removed
        self._emit_stats()

    def on_pause(self) -> None:
        self.emit(PauseEvent())

    def on_resume(self) -> None:
        self.emit(ResumeEvent())

    def on_complete(self) -> None:
        self.emit(CompleteEvent())

    def on_error(self, message: str) -> None:
        self.emit(ErrorEvent(message=message))

    def on_idle_changed(self, is_idle: bool) -> None:
        self.emit(IdleEvent(is_idle=is_idle))

    def on_output(self, data: str) -> None:
        self.emit(OutputEvent(data=data))

    def on_session_created(self, session: AgentSession) -> None:
        self.emit(
            SessionEvent(
                action="created",
                session_id=session.session_id,
                server_url=session.server_url,
            )
        )

    def on_session_ended(self, session_id: str) -> None:
        self.emit(SessionEvent(action="ended", session_id=session_id))

    def on_prompt(self, prompt: str) -> None:
        self.emit(PromptEvent(prompt=prompt))

    def on_model(self, model: str) -> None:
        self.emit(ModelEvent(model=model))

    def on_sandbox(self, sandbox: SandboxInfo) -> None:
        self.emit(
            SandboxEvent(enabled=sandbox.enabled, mode=sandbox.mode, network=sandbox.network)
        )

    def on_tokens(self, tokens: TokensReported) -> None:
        self.emit(
            TokensEvent(
                input=tokens.input,
                output=tokens.output,
                reasoning=tokens.reasoning,
                cache_read=tokens.cache_read,
                cache_write=tokens.cache_write,
            )
        )

    def on_rate_limit(self, primary_agent: str, fallback_agent: str) -> None:
        self.emit(RateLimitEvent(primary_agent=primary_agent, fallback_agent=fallback_agent))

    def on_active_agent(self, plugin: str, reason: str) -> None:
        self.emit(ActiveAgentEvent(plugin=plugin, reason=reason))

    def on_backoff(self, backoff_ms: int, retry_at: int) -> None:
        self.emit(BackoffEvent(backoff_ms=backoff_ms, retry_at=retry_at))

    def on_backoff_cleared(self) -> None:
        self.emit(BackoffClearedEvent())

    def on_plan_file_modified(self) -> None:
        self.emit(PlanModifiedEvent())
        if self._loop is not None:
            progress = self._loop.read_plan()
            self.on_tasks_updated(progress.done, progress.total, progress.error)

    def on_adapter_mode_changed(self, mode: str) -> None:
        self.emit(AdapterModeEvent(mode=mode))

    # Interrupts ----------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        handlers: list[tuple[int, Callable[[], None]]] = [
            (signal.SIGINT, self._on_interrupt),
            (signal.SIGTERM, self._on_terminate),
        ]
        if hasattr(signal, "SIGHUP"):
            handlers.append((signal.SIGHUP, self._on_interrupt))
        loop = asyncio.get_running_loop()
        for signum, handler in handlers:
            try:
                loop.add_signal_handler(signum, handler)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler.
                try:
                    self._previous_handlers[signum] = signal.signal(
                        signum,
                        lambda *_args, _h=handler: loop.call_soon_threadsafe(_h),
                    )
                except (OSError, ValueError) as exc:
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "headless.signal.install_failed",
                        signal=int(signum),
                        exc=exc,
                    )
                    continue
            self._signals.append(signum)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in self._signals:
            if signum in self._previous_handlers:
                with contextlib.suppress(OSError, ValueError):
                    signal.signal(signum, self._previous_handlers.pop(signum))
            else:
                loop.remove_signal_handler(signum)
        self._signals = []

    def _on_terminate(self) -> None:
        log_event(self._logger, logging.INFO, "headless.signal", signal="SIGTERM")
        self.request_abort(ExitCode.INTERRUPTED, "Interrupted (SIGTERM)")

    def _on_interrupt(self) -> None:
        if self._menu.active:
            log_event(self._logger, logging.INFO, "headless.interrupt.ignored")
            return
        if not self._interactive or self._abort.is_set():
            self.request_abort(ExitCode.INTERRUPTED, "Interrupted")
            return
        self._menu_task = asyncio.get_running_loop().create_task(self._show_menu())

    async def _show_menu(self) -> None:
        choice = await self._menu.show()
        if choice is MenuChoice.FORCE_QUIT:
            self.request_abort(ExitCode.INTERRUPTED, "User force quit")
        elif choice is MenuChoice.PAUSE:
            self._control.pause.set(
                json.dumps({"pid": os.getpid(), "paused_at": self._clock()})
            )
            self._write("\nSession paused. Press Ctrl-C then [R] to resume.\n\n")
        elif self._control.pause.is_set():
            self._control.pause.clear()

    # Run -------------------------------------------------------------------

    def _should_wait_for_start(self) -> bool:
        if self._auto_start is not None:
            return not self._auto_start and self._interactive and not is_ci(self._env)
        if is_ci(self._env):
            return False
        return self._interactive

    async def _time_limit(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self.request_abort(
            ExitCode.LIMIT_REACHED, f"Max time ({seconds:g}s) reached"
        )

    async def run(self, loop: IterationLoop, state: PersistedState) -> ExitCode:
        started = self._clock()
        self._loop = loop
        self._state = state
        try:
            await self._run(loop, state)
        finally:
            await self._run_cleanup()
        code = self._exit_code if self._exit_code is not None else ExitCode.SUCCESS
        self._output.finalize(
            RunSummary(
                exit_code=int(code),
                duration_ms=max(0, self._clock() - started),
                tasks_complete=self._tasks_done,
                total_tasks=self._tasks_total,
                commits=self._commits,
                lines_added=self._lines_added,
                lines_removed=self._lines_removed,
                iterations=self._iterations,
            )
        )
        log_event(
            self._logger,
            logging.INFO,
            "headless.finished",
            exit_code=int(code),
            reason=self._abort_reason,
        )
        return code

    async def _run(self, loop: IterationLoop, state: PersistedState) -> None:
        requirements = check_requirements(loop.options, self._root)
        if not requirements.ok:
            message = format_requirements_error(requirements)
            self.emit(ErrorEvent(message=message))
            if self._interactive and not is_ci(self._env):
                await wait_for_quit(self._write, self._key_reader)
            self.request_abort(ExitCode.ERROR, message)
            return
        if self._should_wait_for_start():
            if not await wait_for_start(self._write, self._key_reader):
                self.request_abort(ExitCode.INTERRUPTED, "Cancelled before start")
                return

        self.emit(StartEvent())
        self._install_signal_handlers()
        timer: Optional[asyncio.Task[None]] = None
        if self._limits.max_time:
            timer = asyncio.create_task(self._time_limit(self._limits.max_time))
        try:
            await loop.run(state, self, self._abort)
        except Exception as exc:
            log_event(self._logger, logging.ERROR, "headless.loop.failed", exc=exc)
            self.request_abort(ExitCode.ERROR, str(exc) or exc.__class__.__name__)
        finally:
            if timer is not None:
                timer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await timer
            menu_task = self._menu_task
            if menu_task is not None and not menu_task.done():
                menu_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await menu_task
            self._remove_signal_handlers()
        if self._exit_code is None:
            if loop.phase == LoopPhase.DONE:
                self._exit_code = ExitCode.SUCCESS
            else:
                self.request_abort(ExitCode.INTERRUPTED, "Aborted")

    async def _run_cleanup(self) -> None:
        if self._terminator is None or not self._cleanup.enabled:
            return
        try:
            self.cleanup_result = await asyncio.wait_for(
                self._terminator.shutdown(), timeout=self._cleanup.timeout
            )
        except asyncio.TimeoutError:
            log_event(
                self._logger,
                logging.ERROR,
                "headless.cleanup.timeout",
                timeout=self._cleanup.timeout,
            )
            return
        if not self.cleanup_result.success:
            for error in self.cleanup_result.errors:
                log_event(self._logger, logging.WARNING, "headless.cleanup.error", error=error)


__all__ = ["ANY_EVENT", "ExitCode", "HeadlessEngine"]
