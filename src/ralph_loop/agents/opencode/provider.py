from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import subprocess
import time
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Optional, Sequence

import httpx

from ...errors import RalphError
from ...logging_utils import log_event
from ...prompt import parse_model
from ...utils import resolve_executable, subprocess_env
from ..base import BackendEvent, BackendProcess
from .client import OpenCodeClient
from .translate import OpenCodeEventTranslator

_LISTENING_RE = re.compile(r"listening on (https?://[^\s]+)")

DEFAULT_USERNAME = "opencode"


class BackendLaunchError(RalphError):
    pass


def server_auth_from_env(
    env: Optional[Mapping[str, str]] = None,
) -> Optional[tuple[str, str]]:
    env = os.environ if env is None else env
    password = env.get("OPENCODE_SERVER_PASSWORD") or env.get("RALPH_SERVER_PASSWORD")
    if not password:
        return None
    username = (
        env.get("OPENCODE_SERVER_USERNAME")
        or env.get("RALPH_SERVER_USERNAME")
        or DEFAULT_USERNAME
    )
    return username, password


def split_model_id(model: str) -> dict[str, str]:
    provider_id, model_id = parse_model(model)
    return {"providerID": provider_id, "modelID": model_id}


def _session_id_from(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        for key in ("id", "sessionID", "session_id"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return None


class OpenCodeProvider:
    """Spawn, attach to and talk to ``opencode serve``."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        request_timeout: Optional[float] = None,
        auth: Optional[tuple[str, str]] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._command = [str(arg) for arg in command]
        self._cwd = cwd
        self._logger = logger or logging.getLogger(__name__)
        self._request_timeout = request_timeout
        self._auth = auth
        self._base_env = base_env
        self._clients: dict[str, OpenCodeClient] = {}
        self._stdout_tasks: dict[int, asyncio.Task[None]] = {}

    def _client(self, url: str) -> OpenCodeClient:
        client = self._clients.get(url)
        if client is None:
            client = OpenCodeClient(url, auth=self._auth, timeout=self._request_timeout)
            self._clients[url] = client
        return client

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients = {}
        for client in clients:
            try:
                await client.close()
            except Exception as exc:
                log_event(self._logger, logging.DEBUG, "opencode.client.close_failed", exc=exc)

    async def probe_health(self, url: str, timeout: float) -> bool:
        client = OpenCodeClient(url, auth=self._auth, timeout=timeout)
        try:
            return await asyncio.wait_for(client.health(), timeout=timeout)
        except (httpx.HTTPError, OSError, asyncio.TimeoutError, ValueError) as exc:
            log_event(
                self._logger,
                logging.INFO,
                "opencode.health.unreachable",
                url=url,
                timeout=timeout,
                exc=exc,
            )
            return False
        finally:
            await client.close()

    def _launch_command(self, hostname: str, port: int) -> list[str]:
        command = list(self._command)
        resolved = resolve_executable(command[0])
        if resolved:
            command[0] = resolved
        return command + ["--hostname", hostname, "--port", str(port)]

    async def launch_backend(self, hostname: str, port: int) -> BackendProcess:
        """Spawn the server and return as soon as its PID is known."""
        command = self._launch_command(hostname, port)
        kwargs: dict[str, Any] = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self._cwd) if self._cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=subprocess_env(base_env=self._base_env),
                **kwargs,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise BackendLaunchError(
                f"Unable to start OpenCode server ({command[0]}): {exc}"
            ) from exc
        return BackendProcess(pid=process.pid, process=process)

    async def wait_until_ready(self, backend: BackendProcess, timeout: float) -> str:
        url = await self._read_base_url(backend.process, timeout=timeout)
        if not url:
            raise BackendLaunchError(
                f"OpenCode server did not report a listening URL within {timeout:.0f}s"
            )
        backend.url = url.rstrip("/")
        self._start_stdout_drain(backend)
        log_event(
            self._logger,
            logging.INFO,
            "opencode.backend.ready",
            pid=backend.pid,
            url=backend.url,
        )
        return backend.url

    async def wait_backend_exit(self, backend: BackendProcess) -> Optional[int]:
        return await backend.process.wait()

    async def stop_backend(self, backend: BackendProcess) -> None:
        stdout_task = self._stdout_tasks.pop(backend.pid, None)
        if stdout_task is not None and not stdout_task.done():
            stdout_task.cancel()
            try:
                await stdout_task
            except asyncio.CancelledError:
                pass
        process = backend.process
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                return
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

    def _start_stdout_drain(self, backend: BackendProcess) -> None:
        """
        Keep draining the server's stdout.

        OpenCode logs after startup; if the pipe is never drained its buffer
        fills and the server stalls.
        """
        process = backend.process
        if process.stdout is None:
            return
        existing = self._stdout_tasks.get(backend.pid)
        if existing is not None and not existing.done():
            return
        self._stdout_tasks[backend.pid] = asyncio.create_task(
            self._drain_stdout(backend)
        )

    async def _drain_stdout(self, backend: BackendProcess) -> None:
        stream = backend.process.stdout
        debug_logs = self._logger.isEnabledFor(logging.DEBUG)
        while True:
            line = await stream.readline()
            if not line:
                break
            if not debug_logs:
                continue
            decoded = line.decode("utf-8", errors="ignore").rstrip()
            if decoded:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "opencode.stdout",
                    pid=backend.pid,
                    line=decoded[:2000],
                )

    async def _read_base_url(
        self, process: asyncio.subprocess.Process, timeout: float = 20.0
    ) -> Optional[str]:
        if process.stdout is None:
            return None
        start = time.monotonic()
        while True:
            if process.returncode is not None:
                raise BackendLaunchError(
                    f"OpenCode server exited before ready (code {process.returncode})"
                )
            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                return None
            try:
                line = await asyncio.wait_for(
                    process.stdout.readline(), timeout=timeout - elapsed
                )
            except asyncio.TimeoutError:
                return None
            if not line:
                # EOF: the server is exiting; let wait() settle the return code.
                try:
                    await asyncio.wait_for(process.wait(), timeout=1)
                except asyncio.TimeoutError:
                    pass
                continue
            decoded = line.decode("utf-8", errors="ignore").strip()
            match = _LISTENING_RE.search(decoded)
            if match:
                return match.group(1)

    async def create_session(self, url: str) -> str:
        payload = await self._client(url).create_session(
            directory=str(self._cwd) if self._cwd else None
        )
        session_id = _session_id_from(payload)
        if not session_id:
            raise RalphError(
                f"OpenCode did not return a session id: {json.dumps(payload)[:200]}"
            )
        return session_id

    async def send_prompt(
        self,
        url: str,
        session_id: str,
        text: str,
        *,
        model: str,
        agent: Optional[str] = None,
    ) -> None:
        await self._client(url).prompt_async(
            session_id,
            message=text,
            model=split_model_id(model),
            agent=agent,
        )

    async def subscribe_events(self, url: str) -> AsyncIterator[BackendEvent]:
        directory = str(self._cwd) if self._cwd else None
        async for sse in self._client(url).stream_events(directory=directory):
            try:
                payload = json.loads(sse.data) if sse.data else {}
            except json.JSONDecodeError:
                payload = {}
            if not isinstance(payload, dict):
                payload = {}
            yield BackendEvent(type=sse.event, payload=payload)

    def create_translator(
        self, session_id: str, plan_file: str
    ) -> OpenCodeEventTranslator:
        return OpenCodeEventTranslator(session_id, plan_file)

    async def abort_session(self, url: str, session_id: str) -> None:
        await self._client(url).abort(session_id)

    async def current_project(self, url: str) -> Optional[dict[str, Any]]:
        payload = await self._client(url).current_project(
            directory=str(self._cwd) if self._cwd else None
        )
        return payload if isinstance(payload, dict) else None
