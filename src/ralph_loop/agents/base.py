"""Provider-neutral contract between the loop and an agent backend.

A provider streams :class:`BackendEvent` values in its own shape; its
translator turns them into the :data:`StreamUpdate` variants below, which are
the only backend facts the loop reacts to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol, Union


@dataclass(frozen=True)
class BackendEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def properties(self) -> dict[str, Any]:
        props = self.payload.get("properties")
        return props if isinstance(props, dict) else {}


@dataclass(frozen=True)
class ServerConnected:
    pass


@dataclass(frozen=True)
class ToolCompleted:
    name: str
    title: str
    detail: Optional[str] = None
    verbose: bool = False
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class ReasoningLine:
    text: str


@dataclass(frozen=True)
class TokensReported:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


@dataclass(frozen=True)
class ModelReported:
    model: str


@dataclass(frozen=True)
class PlanFileEdited:
    path: str


@dataclass(frozen=True)
class SessionIdle:
    session_id: str


@dataclass(frozen=True)
class SessionFailed:
    session_id: str
    message: str


StreamUpdate = Union[
    ServerConnected,
    ToolCompleted,
    ReasoningLine,
    TokensReported,
    ModelReported,
    PlanFileEdited,
    SessionIdle,
    SessionFailed,
]


class EventTranslator(Protocol):
    def translate(self, event: BackendEvent) -> list[StreamUpdate]: ...


@dataclass
class BackendProcess:
    """A backend server this run spawned and therefore owns."""

    pid: int
    process: Any
    url: Optional[str] = None


class AgentSessionProvider(Protocol):
    async def probe_health(self, url: str, timeout: float) -> bool: ...

    async def launch_backend(self, hostname: str, port: int) -> BackendProcess: ...

    async def wait_until_ready(self, backend: BackendProcess, timeout: float) -> str: ...

    async def wait_backend_exit(self, backend: BackendProcess) -> Optional[int]: ...

    async def stop_backend(self, backend: BackendProcess) -> None: ...

    async def create_session(self, url: str) -> str: ...

    async def send_prompt(
        self,
        url: str,
        session_id: str,
        text: str,
        *,
        model: str,
        agent: Optional[str] = None,
    ) -> None: ...

    def subscribe_events(self, url: str) -> AsyncIterator[BackendEvent]: ...

    def create_translator(self, session_id: str, plan_file: str) -> EventTranslator: ...

    async def abort_session(self, url: str, session_id: str) -> None: ...

    async def current_project(self, url: str) -> Optional[dict[str, Any]]: ...

    async def close(self) -> None: ...
