from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import urlsplit

from .agents.base import (
    AgentSessionProvider,
    BackendEvent,
    BackendProcess,
    EventTranslator,
)
from .config import DEFAULT_HOSTNAME, DEFAULT_PORT
from .errors import ConnectivityError, SessionClosedError
from .logging_utils import log_event
from .processes import ProcessController, ProcessRegistry, Terminator

LOCAL_PROBE_TIMEOUT_SECONDS = 1.0
DEFAULT_READY_TIMEOUT_SECONDS = 20.0
GROUP_EXIT_POLLS = 20
GROUP_EXIT_POLL_SECONDS = 0.05

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def normalize_server_url(url: str) -> str:
    """Reduce a user supplied backend URL to its ``scheme://host:port`` origin."""
    parsed = urlsplit((url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ConnectivityError(
            f"Invalid server URL: {url!r}. Expected http(s)://host[:port]"
        )
    if parsed.path not in ("", "/") or parsed.query or parsed.fragment:
        raise ConnectivityError(
            f"Invalid server URL: {url!r}. Only an origin is accepted, without path"
        )
    return f"{parsed.scheme}://{parsed.netloc}"


def is_insecure_remote(url: str) -> bool:
    parsed = urlsplit(url)
    return parsed.scheme == "http" and (parsed.hostname or "") not in _LOCAL_HOSTS


def _port_of(url: str) -> Optional[int]:
    try:
        return urlsplit(url).port
    except ValueError:
        return None


@dataclass(frozen=True)
class SandboxInfo:
    enabled: bool
    mode: str
    network: Optional[bool] = None


class AgentSession:
    """One logical backend session, valid until the loop reports it ended."""

    def __init__(
        self,
        session_id: str,
        server_url: str,
        attached: bool,
        sender: Callable[[str], Awaitable[None]],
    ) -> None:
        self.session_id = session_id
        self.server_url = server_url
        self.attached = attached
        self._sender = sender
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    def mark_ended(self) -> None:
        self._ended = True

    async def send_message(self, text: str) -> None:
        if self._ended:
            raise SessionClosedError(f"Session {self.session_id} has already ended")
        await self._sender(text)

    def __repr__(self) -> str:
        return (
            f"AgentSession(session_id={self.session_id!r}, "
            f"server_url={self.server_url!r}, attached={self.attached})"
        )


class SessionManager:
    """Attach to or spawn the agent backend and hand out per-iteration sessions.

    A backend this run spawns is registered with the process registry right
    after launch and reused for every iteration; an attached backend is never
    stopped by us.
    """

    def __init__(
        self,
        provider: AgentSessionProvider,
        registry: ProcessRegistry,
        controller: ProcessController,
        terminator: Terminator,
        *,
        server_url: Optional[str] = None,
        server_timeout: float = 5.0,
        hostname: str = DEFAULT_HOSTNAME,
        port: int = DEFAULT_PORT,
        ready_timeout: float = DEFAULT_READY_TIMEOUT_SECONDS,
        cwd: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._controller = controller
        self._terminator = terminator
        self._server_url = server_url
        self._server_timeout = server_timeout
        self._hostname = hostname
        self._port = port
        self._ready_timeout = ready_timeout
        self._cwd = cwd or Path.cwd()
        self._logger = logger or logging.getLogger(__name__)
        self._url: Optional[str] = None
        self._attached = False
        self._backend: Optional[BackendProcess] = None
        self._port_pid: Optional[int] = None
        self._exit_watcher: Optional[asyncio.Task[None]] = None
        self._connect_lock = asyncio.Lock()

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def backend_pid(self) -> Optional[int]:
        return self._backend.pid if self._backend is not None else None

    async def connect(self) -> str:
        """Return the backend URL, attaching or spawning on first use."""
        async with self._connect_lock:
            if self._url is not None:
                return self._url
            if self._server_url:
                self._url = await self._attach_external(self._server_url)
                self._attached = True
                return self._url
            local_url = f"http://{self._hostname}:{self._port}"
            if await self._provider.probe_health(local_url, LOCAL_PROBE_TIMEOUT_SECONDS):
                log_event(
                    self._logger, logging.INFO, "session.backend.attached", url=local_url
                )
                self._url = local_url
                self._attached = True
                return self._url
            self._url = await self._spawn()
            self._attached = False
            return self._url

    async def _attach_external(self, raw_url: str) -> str:
        url = normalize_server_url(raw_url)
        if is_insecure_remote(url):
            log_event(
                self._logger,
                logging.WARNING,
                "session.backend.insecure",
                url=url,
                detail="plain HTTP to a non-local host; credentials are sent unencrypted",
            )
        healthy = await self._provider.probe_health(url, self._server_timeout)
        if not healthy:
            raise ConnectivityError(
                f"Cannot connect to OpenCode server at {url} "
                f"(no healthy response within {self._server_timeout:g}s)"
            )
        log_event(self._logger, logging.INFO, "session.backend.attached", url=url)
        return url

    async def _spawn(self) -> str:
        backend = await self._provider.launch_backend(self._hostname, self._port)
        # Registered before anything else can await, so an interrupt landing
        # during readiness still kills the server.
        self._registry.register(backend.pid)
        self._backend = backend
        log_event(
            self._logger,
            logging.INFO,
            "session.backend.spawned",
            pid=backend.pid,
            hostname=self._hostname,
            port=self._port,
        )
        try:
            url = await self._provider.wait_until_ready(backend, self._ready_timeout)
        except BaseException:
            await self._stop_backend()
            raise
        await self._register_port_owner(url)
        self._exit_watcher = asyncio.create_task(self._watch_exit(backend))
        return url

    async def _register_port_owner(self, url: str) -> None:
        """The listener can be a grandchild (launcher scripts); track it too."""
        port = _port_of(url)
        if port is None or self._backend is None:
            return
        pid = await asyncio.to_thread(self._controller.find_pid_by_port, port)
        if pid is None or pid == self._backend.pid:
            return
        self._port_pid = pid
        self._registry.register(pid)
        log_event(
            self._logger,
            logging.INFO,
            "session.backend.port_owner",
            pid=pid,
            port=port,
            launcher_pid=self._backend.pid,
        )

    async def _watch_exit(self, backend: BackendProcess) -> None:
        code = await self._provider.wait_backend_exit(backend)
        log_event(
            self._logger,
            logging.INFO,
            "session.backend.exited",
            pid=backend.pid,
            returncode=code,
        )
        self._terminator.confirm_exited(backend.pid)
        if self._port_pid is not None:
            self._terminator.confirm_exited(self._port_pid)

    async def open_session(self, *, model: str, agent: Optional[str] = None) -> AgentSession:
        url = await self.connect()
        session_id = await self._provider.create_session(url)
        log_event(
            self._logger,
            logging.INFO,
            "session.opened",
            session_id=session_id,
            url=url,
            attached=self._attached,
        )

        async def _send(text: str) -> None:
            await self._provider.send_prompt(
                url, session_id, text, model=model, agent=agent
            )

        return AgentSession(session_id, url, self._attached, _send)

    async def end_session(self, session: AgentSession, *, abort_turn: bool = False) -> None:
        """Mark the session ended; optionally abort its in-flight turn."""
        was_open = not session.ended
        session.mark_ended()
        if abort_turn and was_open:
            await self.abort_turn(session)
        log_event(
            self._logger,
            logging.INFO,
            "session.ended",
            session_id=session.session_id,
            aborted=abort_turn or None,
        )

    async def abort_turn(self, session: AgentSession) -> None:
        try:
            await self._provider.abort_session(session.server_url, session.session_id)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "session.abort_failed",
                session_id=session.session_id,
                exc=exc,
            )

    def subscribe_events(self) -> AsyncIterator[BackendEvent]:
        if self._url is None:
            raise ConnectivityError("Backend is not connected")
        return self._provider.subscribe_events(self._url)

    def create_translator(self, session: AgentSession, plan_file: str) -> EventTranslator:
        return self._provider.create_translator(session.session_id, plan_file)

    async def detect_sandbox(self) -> Optional[SandboxInfo]:
        """Best effort: ask the backend whether our directory is a sandbox."""
        if self._url is None:
            return None
        try:
            project = await self._provider.current_project(self._url)
        except Exception as exc:
            log_event(self._logger, logging.INFO, "session.sandbox.unknown", exc=exc)
            return None
        if not project:
            return None
        sandboxes: Any = project.get("sandboxes") or []
        current = os.fspath(self._cwd).replace("\\", "/")
        enabled = any(
            isinstance(entry, str) and entry.replace("\\", "/") == current
            for entry in sandboxes
        )
        return SandboxInfo(enabled=enabled, mode="sandbox" if enabled else "local")

    async def _stop_backend(self) -> None:
        backend = self._backend
        if backend is None:
            return
        try:
            await self._provider.stop_backend(backend)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "session.backend.stop_failed",
                pid=backend.pid,
                exc=exc,
            )
        # Stopping the leader leaves its children running in the same group.
        if self._controller.group_alive(backend.pid):
            attempt = await asyncio.to_thread(self._controller.kill_tree, backend.pid)
            log_event(
                self._logger,
                logging.INFO if attempt.ok else logging.WARNING,
                "session.backend.group_killed",
                pid=backend.pid,
                outcome=attempt.outcome,
                error=attempt.error,
            )
            for _ in range(GROUP_EXIT_POLLS):
                if not self._controller.group_alive(backend.pid):
                    break
                await asyncio.sleep(GROUP_EXIT_POLL_SECONDS)
        self._terminator.confirm_exited(backend.pid)
        if self._port_pid is not None:
            self._terminator.confirm_exited(self._port_pid)

    async def close(self) -> None:
        """Stop a spawned backend; an attached one is left running."""
        watcher = self._exit_watcher
        self._exit_watcher = None
        if watcher is not None and not watcher.done():
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        if not self._attached:
            await self._stop_backend()
        self._backend = None
        self._url = None
        await self._provider.close()


__all__ = [
    "AgentSession",
    "SandboxInfo",
    "SessionManager",
    "is_insecure_remote",
    "normalize_server_url",
]
