"""Events the engine publishes to output sinks and listeners.

One frozen dataclass per event type; ``type`` is the discriminator used on
the wire. Events are transient and never persisted.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional


@dataclass(frozen=True)
class LoopEvent:
    type: ClassVar[str] = ""
    timestamp: Optional[int] = field(default=None, kw_only=True)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        for item in dataclasses.fields(self):
            value = getattr(self, item.name)
            if value is not None:
                payload[item.name] = value
        return payload


@dataclass(frozen=True)
class StartEvent(LoopEvent):
    type: ClassVar[str] = "start"


@dataclass(frozen=True)
class IterationStartEvent(LoopEvent):
    type: ClassVar[str] = "iteration_start"
    iteration: int


@dataclass(frozen=True)
class IterationEndEvent(LoopEvent):
    type: ClassVar[str] = "iteration_end"
    iteration: int
    duration_ms: int
    commits: int


@dataclass(frozen=True)
class ToolEvent(LoopEvent):
    type: ClassVar[str] = "tool"
    iteration: int
    name: str
    title: str
    detail: Optional[str] = None
    verbose: bool = False


@dataclass(frozen=True)
class ReasoningEvent(LoopEvent):
    type: ClassVar[str] = "reasoning"
    iteration: int
    text: str


@dataclass(frozen=True)
class OutputEvent(LoopEvent):
    """Raw adapter output; not produced while running against an OpenCode server."""

    type: ClassVar[str] = "output"
    data: str


@dataclass(frozen=True)
class ProgressEvent(LoopEvent):
    type: ClassVar[str] = "progress"
    done: int
    total: int


@dataclass(frozen=True)
class StatsEvent(LoopEvent):
    type: ClassVar[str] = "stats"
    commits: int
    lines_added: int
    lines_removed: int


@dataclass(frozen=True)
class PauseEvent(LoopEvent):
    type: ClassVar[str] = "pause"


@dataclass(frozen=True)
class ResumeEvent(LoopEvent):
    type: ClassVar[str] = "resume"


@dataclass(frozen=True)
class IdleEvent(LoopEvent):
    type: ClassVar[str] = "idle"
    is_idle: bool


@dataclass(frozen=True)
class ErrorEvent(LoopEvent):
    type: ClassVar[str] = "error"
    message: str


@dataclass(frozen=True)
class CompleteEvent(LoopEvent):
    type: ClassVar[str] = "complete"


@dataclass(frozen=True)
class ModelEvent(LoopEvent):
    type: ClassVar[str] = "model"
    model: str


@dataclass(frozen=True)
class SandboxEvent(LoopEvent):
    type: ClassVar[str] = "sandbox"
    enabled: bool
    mode: Optional[str] = None
    network: Optional[bool] = None


@dataclass(frozen=True)
class TokensEvent(LoopEvent):
    type: ClassVar[str] = "tokens"
    input: int
    output: int
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


@dataclass(frozen=True)
class RateLimitEvent(LoopEvent):
    type: ClassVar[str] = "rate_limit"
    primary_agent: str
    fallback_agent: str


@dataclass(frozen=True)
class ActiveAgentEvent(LoopEvent):
    type: ClassVar[str] = "active_agent"
    plugin: str
    reason: str = "primary"


@dataclass(frozen=True)
class BackoffEvent(LoopEvent):
    type: ClassVar[str] = "backoff"
    backoff_ms: int
    retry_at: int


@dataclass(frozen=True)
class BackoffClearedEvent(LoopEvent):
    type: ClassVar[str] = "backoff_cleared"


@dataclass(frozen=True)
class SessionEvent(LoopEvent):
    type: ClassVar[str] = "session"
    action: str
    session_id: str
    server_url: Optional[str] = None


@dataclass(frozen=True)
class PromptEvent(LoopEvent):
    type: ClassVar[str] = "prompt"
    prompt: str


@dataclass(frozen=True)
class PlanModifiedEvent(LoopEvent):
    type: ClassVar[str] = "plan_modified"


@dataclass(frozen=True)
class AdapterModeEvent(LoopEvent):
    type: ClassVar[str] = "adapter_mode"
    mode: str


EVENT_CLASSES: dict[str, type[LoopEvent]] = {
    cls.type: cls
    for cls in (
        StartEvent,
        IterationStartEvent,
        IterationEndEvent,
        ToolEvent,
        ReasoningEvent,
        OutputEvent,
        ProgressEvent,
        StatsEvent,
        PauseEvent,
        ResumeEvent,
        IdleEvent,
        ErrorEvent,
        CompleteEvent,
        ModelEvent,
        SandboxEvent,
        TokensEvent,
        RateLimitEvent,
        ActiveAgentEvent,
        BackoffEvent,
        BackoffClearedEvent,
        SessionEvent,
        PromptEvent,
        PlanModifiedEvent,
        AdapterModeEvent,
    )
}

EVENT_TYPES: tuple[str, ...] = tuple(EVENT_CLASSES)


@dataclass(frozen=True)
class RunSummary:
    exit_code: int
    duration_ms: int
    tasks_complete: int = 0
    total_tasks: int = 0
    commits: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    iterations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)
