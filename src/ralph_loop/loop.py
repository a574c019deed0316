"""The iteration loop: one agent session per task until the plan is done.

Each iteration reads the plan, builds the prompt, opens a backend session,
streams its events until the session goes idle and then reports duration and
commit/diff progress. Pause/done sentinels are checked between iterations
(pause also mid-stream); the abort event wins over everything and makes
:meth:`IterationLoop.run` return without reporting completion or errors.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from .agents.base import (
    EventTranslator,
    ModelReported,
    PlanFileEdited,
    ReasoningLine,
    ServerConnected,
    SessionFailed,
    SessionIdle,
    TokensReported,
    ToolCompleted,
)
from .config import ErrorHandlingConfig
from .control import ControlChannel
from .errors import LoopError, SessionError
from .events import LoopEvent, ReasoningEvent, ToolEvent
from .git import DiffStats, GitReader
from .logging_utils import log_event
from .plan import PlanProgress, parse_plan
from .prompt import DEFAULT_PROGRESS_FILE, SteeringContext, build_prompt, parse_model
from .ratelimit import (
    BackoffController,
    BackoffDecision,
    RateLimitDetector,
    resolve_fallback_agent,
)
from .sessions import AgentSession, SandboxInfo, SessionManager
from .state import PersistedState
from .utils import now_ms

_logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAUSE_POLL_SECONDS = 1.0


class LoopPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    AWAITING_AGENT = "awaiting_agent"
    DRAINING = "draining"
    FINALIZING = "finalizing"
    PAUSED = "paused"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass(frozen=True)
class LoopOptions:
    plan_file: str
    model: str
    progress_file: str = DEFAULT_PROGRESS_FILE
    prompt: Optional[str] = None
    prompt_file: Optional[str] = None
    server_url: Optional[str] = None
    server_timeout: float = 5.0
    agent: Optional[str] = None
    fallback_agents: Mapping[str, str] = field(default_factory=dict)
    require_plan_complete: bool = False


class LoopCallbacks:
    """Observer hooks fired by the loop. Every hook defaults to a no-op."""

    def on_iteration_start(self, iteration: int) -> None:
        pass

    def on_event(self, event: LoopEvent) -> None:
        pass

    def on_iteration_complete(
        self, iteration: int, duration_ms: int, commits: int
    ) -> None:
        pass

    def on_tasks_updated(self, done: int, total: int, error: Optional[str]) -> None:
        pass

    def on_commits_updated(self, commits: int) -> None:
        pass

    def on_diff_updated(self, added: int, removed: int) -> None:
        pass

    def on_pause(self) -> None:
        pass

    def on_resume(self) -> None:
        pass

    def on_complete(self) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def on_idle_changed(self, is_idle: bool) -> None:
        pass

    def on_output(self, data: str) -> None:
        """Raw terminal output from a PTY-style adapter.

        The OpenCode server adapter has no raw stream, so nothing calls this
        yet; its text parts arrive as reasoning events instead.
        """

    def on_session_created(self, session: AgentSession) -> None:
        pass

    def on_session_ended(self, session_id: str) -> None:
        pass

    def on_prompt(self, prompt: str) -> None:
        pass

    def on_model(self, model: str) -> None:
        pass

    def on_sandbox(self, sandbox: SandboxInfo) -> None:
        pass

    def on_tokens(self, tokens: TokensReported) -> None:
        pass

    def on_rate_limit(self, primary_agent: str, fallback_agent: str) -> None:
        pass

    def on_active_agent(self, plugin: str, reason: str) -> None:
        pass

    def on_backoff(self, backoff_ms: int, retry_at: int) -> None:
        pass

    def on_backoff_cleared(self) -> None:
        pass

    def on_plan_file_modified(self) -> None:
        pass

    def on_adapter_mode_changed(self, mode: str) -> None:
        pass


class _Aborted(Exception):
    """Internal unwind signal; never escapes :meth:`IterationLoop.run`."""


async def _next_event(iterator: Any) -> Any:
    return await iterator.__anext__()


class IterationLoop:
    def __init__(
        self,
        options: LoopOptions,
        sessions: SessionManager,
        *,
        root: Path,
        control: Optional[ControlChannel] = None,
        git: Optional[GitReader] = None,
        backoff: Optional[BackoffController] = None,
        detector: Optional[RateLimitDetector] = None,
        plan_reader: Callable[[Path], PlanProgress] = parse_plan,
        pause_poll_interval: float = DEFAULT_PAUSE_POLL_SECONDS,
        clock: Callable[[], int] = now_ms,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.options = options
        self._sessions = sessions
        self._root = root
        self._control = control or ControlChannel.for_directory(root)
        self._git = git or GitReader(root)
        self._backoff = backoff or BackoffController(ErrorHandlingConfig())
        self._detector = detector or RateLimitDetector()
        self._plan_reader = plan_reader
        self._pause_poll_interval = pause_poll_interval
        self._clock = clock
        self._logger = logger or _logger
        self._steering = SteeringContext()
        self._abort = asyncio.Event()
        self._model = options.model
        self._on_fallback = False
        self._previous_commits = 0
        self._session: Optional[AgentSession] = None
        self.phase = LoopPhase.IDLE

    @property
    def model(self) -> str:
        return self._model

    @property
    def current_session(self) -> Optional[AgentSession]:
        session = self._session
        if session is None or session.ended:
            return None
        return session

    def add_steering(self, text: str) -> bool:
        """Append operator context to every prompt from the next iteration on."""
        return self._steering.add(text)

    @property
    def plan_path(self) -> Path:
        return self._root / self.options.plan_file

    def read_plan(self) -> PlanProgress:
        return self._plan_reader(self.plan_path)

    async def run(
        self,
        state: PersistedState,
        callbacks: LoopCallbacks,
        abort: Optional[asyncio.Event] = None,
    ) -> None:
        if abort is not None:
            self._abort = abort
        self.phase = LoopPhase.STARTING
        try:
            await self._run(state, callbacks)
        except _Aborted:
            self.phase = LoopPhase.ABORTED
        except LoopError:
            self.phase = LoopPhase.ERRORED
            raise
        except Exception as exc:
            if self._abort.is_set():
                self.phase = LoopPhase.ABORTED
                return
            self.phase = LoopPhase.ERRORED
            log_event(self._logger, logging.ERROR, "loop.failed", exc=exc)
            callbacks.on_error(str(exc) or exc.__class__.__name__)
            raise
        finally:
            await self._shutdown_session()
            await self._sessions.close()
        if self._abort.is_set() and self.phase != LoopPhase.DONE:
            self.phase = LoopPhase.ABORTED
        log_event(self._logger, logging.INFO, "loop.exited", phase=self.phase.value)

    async def _run(self, state: PersistedState, callbacks: LoopCallbacks) -> None:
        callbacks.on_adapter_mode_changed("sdk")
        url = await self._race(self._sessions.connect())
        log_event(
            self._logger,
            logging.INFO,
            "loop.connected",
            url=url,
            attached=self._sessions.attached,
        )
        callbacks.on_model(self._model)
        callbacks.on_active_agent(self.options.agent or self._model, "primary")
        sandbox = await self._race(self._sessions.detect_sandbox())
        if sandbox is not None:
            callbacks.on_sandbox(sandbox)

        iteration = len(state.iteration_times)
        self._previous_commits = await self._git.commits_since(state.initial_commit_hash)

        while not self._abort.is_set():
            if self._consume_done():
                self.phase = LoopPhase.DONE
                log_event(self._logger, logging.INFO, "loop.done", iteration=iteration)
                callbacks.on_complete()
                return
            if self._control.pause.is_set():
                await self._wait_while_paused(state, callbacks)
                continue

            iteration += 1
            try:
                await self._run_iteration(iteration, state, callbacks)
            except _Aborted:
                raise
            except Exception as exc:
                if self._abort.is_set():
                    raise _Aborted() from exc
                await self._shutdown_session()
                decision = await self._handle_failure(exc, callbacks)
                if decision.retry:
                    # The retry reuses this iteration's number.
                    iteration -= 1
        raise _Aborted()

    def _consume_done(self) -> bool:
        if not self._control.done.is_set():
            return False
        if self.options.require_plan_complete:
            progress = self.read_plan()
            if not progress.is_complete:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "loop.done.premature",
                    done=progress.done,
                    total=progress.total,
                )
                self._control.done.clear()
                return False
        self._control.done.clear()
        return True

    async def _sleep_or_abort(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if the abort event fired meanwhile."""
        if self._abort.is_set():
            return True
        try:
            await asyncio.wait_for(self._abort.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True

    async def _race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the abort event fires first."""
        if self._abort.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _Aborted()
        work = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._abort.wait())
        try:
            done, _pending = await asyncio.wait(
                {work, stop}, return_when=asyncio.FIRST_COMPLETED
            )
            if work in done:
                return work.result()
            raise _Aborted()
        finally:
            for task in (work, stop):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError, Exception):
                        await task

    async def _wait_while_paused(
        self,
        state: PersistedState,
        callbacks: LoopCallbacks,
        *,
        on_pause: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        if not self._control.pause.is_set():
            return
        previous = self.phase
        self.phase = LoopPhase.PAUSED
        log_event(self._logger, logging.INFO, "loop.paused")
        callbacks.on_pause()
        if on_pause is not None:
            await on_pause()
        started = self._clock()
        while self._control.pause.is_set():
            if await self._sleep_or_abort(self._pause_poll_interval):
                break
        state.paused_ms += max(0, self._clock() - started)
        if self._abort.is_set():
            raise _Aborted()
        log_event(self._logger, logging.INFO, "loop.resumed")
        callbacks.on_resume()
        self.phase = previous

    async def _run_iteration(
        self, iteration: int, state: PersistedState, callbacks: LoopCallbacks
    ) -> None:
        started = self._clock()
        self.phase = LoopPhase.STARTING
        log_event(
            self._logger,
            logging.INFO,
            "loop.iteration.start",
            iteration=iteration,
            model=self._model,
            agent=self.options.agent,
        )
        callbacks.on_iteration_start(iteration)
        if self._abort.is_set():
            raise _Aborted()

        progress = self.read_plan()
        callbacks.on_tasks_updated(progress.done, progress.total, progress.error)
        prompt = self._steering.apply(
            build_prompt(
                self.options.plan_file,
                progress_file=self.options.progress_file,
                prompt=self.options.prompt,
                prompt_file=self._prompt_file_path(),
            )
        )
        callbacks.on_prompt(prompt)

        session = await self._race(
            self._sessions.open_session(model=self._model, agent=self.options.agent)
        )
        self._session = session
        callbacks.on_session_created(session)
        translator = self._sessions.create_translator(session, self.options.plan_file)
        self.phase = LoopPhase.AWAITING_AGENT
        callbacks.on_idle_changed(True)
        await self._drain(iteration, session, translator, prompt, state, callbacks)

        self.phase = LoopPhase.FINALIZING
        duration_ms = max(0, self._clock() - started)
        total_commits = await self._git.commits_since(state.initial_commit_hash)
        commits = max(0, total_commits - self._previous_commits)
        self._previous_commits = total_commits
        diff = await self._git.diff_stats(state.initial_commit_hash)
        state.iteration_times.append(duration_ms)
        log_event(
            self._logger,
            logging.INFO,
            "loop.iteration.complete",
            iteration=iteration,
            duration_ms=duration_ms,
            commits=commits,
            lines_added=diff.added,
            lines_removed=diff.removed,
        )
        callbacks.on_iteration_complete(iteration, duration_ms, commits)
        callbacks.on_commits_updated(total_commits)
        callbacks.on_diff_updated(diff.added, diff.removed)
        if self._backoff.record_success():
            callbacks.on_backoff_cleared()
        self.phase = LoopPhase.IDLE

    def _prompt_file_path(self) -> Optional[str]:
        if not self.options.prompt_file:
            return None
        path = Path(self.options.prompt_file)
        if not path.is_absolute():
            path = self._root / path
        return str(path)

    async def _drain(
        self,
        iteration: int,
        session: AgentSession,
        translator: EventTranslator,
        prompt: str,
        state: PersistedState,
        callbacks: LoopCallbacks,
    ) -> None:
        """Consume backend events until our session goes idle or fails."""
        iterator = self._sessions.subscribe_events().__aiter__()
        prompt_sent = False
        active = False
        try:
            while True:
                try:
                    event = await self._race(_next_event(iterator))
                except StopAsyncIteration:
                    raise SessionError(
                        f"Event stream closed before session {session.session_id} finished"
                    ) from None

                if self._control.pause.is_set():
                    await self._wait_while_paused(
                        state,
                        callbacks,
                        on_pause=lambda: self._sessions.abort_turn(session),
                    )

                for update in translator.translate(event):
                    if isinstance(update, ServerConnected):
                        if not prompt_sent:
                            prompt_sent = True
                            log_event(
                                self._logger,
                                logging.INFO,
                                "loop.prompt.sent",
                                session_id=session.session_id,
                                length=len(prompt),
                            )
                            await self._race(session.send_message(prompt))
                    elif isinstance(update, SessionIdle):
                        await self._sessions.end_session(session)
                        callbacks.on_session_ended(session.session_id)
                        return
                    elif isinstance(update, SessionFailed):
                        await self._sessions.end_session(session)
                        callbacks.on_session_ended(session.session_id)
                        raise SessionError(update.message)
                    elif isinstance(update, ToolCompleted):
                        if not active:
                            active = True
                            self.phase = LoopPhase.DRAINING
                            callbacks.on_idle_changed(False)
                        callbacks.on_event(
                            ToolEvent(
                                iteration=iteration,
                                name=update.name,
                                title=update.title,
                                detail=update.detail,
                                verbose=update.verbose,
                                timestamp=update.timestamp or self._clock(),
                            )
                        )
                        await self._refresh_progress(state, callbacks)
                    elif isinstance(update, ReasoningLine):
                        if not active:
                            active = True
                            self.phase = LoopPhase.DRAINING
                            callbacks.on_idle_changed(False)
                        callbacks.on_event(
                            ReasoningEvent(
                                iteration=iteration,
                                text=update.text,
                                timestamp=self._clock(),
                            )
                        )
                    elif isinstance(update, TokensReported):
                        callbacks.on_tokens(update)
                    elif isinstance(update, ModelReported):
                        callbacks.on_model(update.model)
                    elif isinstance(update, PlanFileEdited):
                        log_event(
                            self._logger,
                            logging.INFO,
                            "loop.plan.modified",
                            path=update.path,
                        )
                        callbacks.on_plan_file_modified()
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    async def _refresh_progress(
        self, state: PersistedState, callbacks: LoopCallbacks
    ) -> None:
        progress = self.read_plan()
        callbacks.on_tasks_updated(progress.done, progress.total, progress.error)
        commits = await self._git.commits_since(state.initial_commit_hash)
        callbacks.on_commits_updated(commits)
        diff: DiffStats = await self._git.diff_stats(state.initial_commit_hash)
        callbacks.on_diff_updated(diff.added, diff.removed)

    def _rate_limit_agent_id(self) -> Optional[str]:
        try:
            provider_id, _model_id = parse_model(self._model)
        except ValueError:
            return self.options.agent
        return provider_id or self.options.agent

    async def _handle_failure(
        self, exc: BaseException, callbacks: LoopCallbacks
    ) -> BackoffDecision:
        message = str(exc) or exc.__class__.__name__
        log_event(self._logger, logging.WARNING, "loop.iteration.failed", exc=exc)
        limit = self._detector.detect(message, agent_id=self._rate_limit_agent_id())
        if limit.is_rate_limit and not self._on_fallback:
            fallback = resolve_fallback_agent(self._model, self.options.fallback_agents)
            if fallback:
                primary = self._model
                self._model = fallback
                self._on_fallback = True
                log_event(
                    self._logger,
                    logging.WARNING,
                    "loop.fallback",
                    primary=primary,
                    fallback=fallback,
                    retry_after=limit.retry_after,
                )
                callbacks.on_model(fallback)
                callbacks.on_rate_limit(primary, fallback)
                callbacks.on_active_agent(self.options.agent or fallback, "fallback")

        decision = self._backoff.record_failure(
            message, retry_after=limit.retry_after if limit.is_rate_limit else None
        )
        log_event(
            self._logger,
            logging.INFO,
            "loop.error.handled",
            strategy=decision.strategy,
            should_continue=decision.should_continue,
            attempt=decision.attempt,
            delay=decision.delay,
        )
        if decision.retry:
            callbacks.on_error(message)
            callbacks.on_backoff(int(decision.delay * 1000), decision.retry_at or 0)
            if await self._sleep_or_abort(decision.delay):
                raise _Aborted()
            return decision
        callbacks.on_error(decision.message)
        if not decision.should_continue:
            raise LoopError(decision.message) from exc
        return decision

    async def _shutdown_session(self) -> None:
        session = self._session
        self._session = None
        if session is None or session.ended:
            return
        await self._sessions.end_session(session, abort_turn=True)


__all__ = [
    "IterationLoop",
    "LoopCallbacks",
    "LoopOptions",
    "LoopPhase",
]
