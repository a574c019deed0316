"""Output sinks for headless runs: ``text``, ``json`` and ``jsonl``."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

import typer

from ..events import LoopEvent, RunSummary
from ..utils import now_ms

OUTPUT_FORMATS = ("text", "json", "jsonl")

Writer = Callable[[str], None]


class OutputSink(Protocol):
    def emit(self, event: LoopEvent) -> None: ...

    def finalize(self, summary: RunSummary) -> None: ...


def _default_write(text: str) -> None:
    typer.echo(text, nl=False)


def iso_timestamp(epoch_ms: int) -> str:
    moment = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _event_payload(event: LoopEvent, timestamps: bool) -> dict[str, Any]:
    payload = event.to_dict()
    if not timestamps:
        payload.pop("timestamp", None)
    return payload


class JsonlOutput:
    """One JSON object per line, written as events arrive."""

    def __init__(self, *, timestamps: bool = False, write: Optional[Writer] = None) -> None:
        self._timestamps = timestamps
        self._write = write or _default_write

    def emit(self, event: LoopEvent) -> None:
        payload = _event_payload(event, self._timestamps)
        if self._timestamps:
            payload["timestamp"] = iso_timestamp(event.timestamp or now_ms())
        self._write(json.dumps(payload) + "\n")

    def finalize(self, summary: RunSummary) -> None:
        payload: dict[str, Any] = {"type": "summary", **summary.to_dict()}
        if self._timestamps:
            payload["timestamp"] = iso_timestamp(now_ms())
        self._write(json.dumps(payload) + "\n")


class JsonOutput:
    """Buffer everything and write a single document at the end."""

    def __init__(self, *, timestamps: bool = False, write: Optional[Writer] = None) -> None:
        self._timestamps = timestamps
        self._write = write or _default_write
        self._events: list[dict[str, Any]] = []

    @property
    def events(self) -> list[dict[str, Any]]:
        return list(self._events)

    def emit(self, event: LoopEvent) -> None:
        self._events.append(_event_payload(event, self._timestamps))

    def finalize(self, summary: RunSummary) -> None:
        document = {"events": self._events, "summary": summary.to_dict()}
        self._write(json.dumps(document) + "\n")


TOOL_DISPLAY_NAMES = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "bash": "Bash",
    "glob": "Glob",
    "grep": "Grep",
    "task": "Task",
    "todowrite": "TodoWrite",
    "todoread": "TodoRead",
    "lsp": "LSP",
    "websearch": "Web Search",
    "webfetch": "Web Fetch",
    "codesearch": "Code Search",
    "gh": "GitHub",
    "github": "GitHub",
    "mcp": "MCP Tool",
    "skill": "Skill",
}


def tool_display_name(name: str) -> str:
    """``tavily_search`` -> ``Tavily Search``; known tools use their label."""
    normalized = name.lower()
    server, sep, action = normalized.partition("_")
    if sep and server and action:
        server_label = TOOL_DISPLAY_NAMES.get(server, server[:1].upper() + server[1:])
        action_label = " ".join(word.capitalize() for word in action.split("_"))
        return f"{server_label} {action_label}"
    return TOOL_DISPLAY_NAMES.get(normalized, name[:1].upper() + name[1:])


def _flag(value: Any) -> str:
    return str(value).lower() if isinstance(value, bool) else str(value)


def format_duration(duration_ms: int) -> str:
    seconds = max(0, duration_ms) // 1000
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class TextOutput:
    """Human readable lines.

    Repeated model announcements are suppressed and token usage is summed
    into the footer instead of printed per step.
    """

    def __init__(self, *, timestamps: bool = False, write: Optional[Writer] = None) -> None:
        self._timestamps = timestamps
        self._write = write or _default_write
        self._last_model: Optional[str] = None
        self._tokens = {"input": 0, "output": 0, "reasoning": 0}

    def _line(self, event: LoopEvent) -> Optional[str]:
        kind = event.type
        data = event.to_dict()
        if kind == "start":
            return "RALPH - AI Coding Agent"
        if kind == "iteration_start":
            return f"\n--- Iteration {data['iteration']} ---"
        if kind == "iteration_end":
            return (
                f"iteration {data['iteration']} end "
                f"duration_ms={data['duration_ms']} commits={data['commits']}"
            )
        if kind == "tool":
            label = tool_display_name(data["name"])
            title = data.get("title") or ""
            detail = f" {data['detail']}" if data.get("detail") else ""
            if title:
                return f"[{data['name']}] {label}: {title}{detail}"
            return f"[{data['name']}] {label}{detail}"
        if kind == "reasoning":
            return f"[thought] {data['text']}"
        if kind == "progress":
            return f"progress {data['done']}/{data['total']}"
        if kind == "stats":
            return (
                f"stats commits={data['commits']} "
                f"+{data['lines_added']} -{data['lines_removed']}"
            )
        if kind == "pause":
            return "[paused]"
        if kind == "resume":
            return "[running]"
        if kind == "idle":
            return f"idle {_flag(data['is_idle'])}"
        if kind == "error":
            return f"[error] {data['message']}"
        if kind == "complete":
            return "[DONE]"
        if kind == "model":
            if data["model"] == self._last_model:
                return None
            self._last_model = data["model"]
            return f"Model: {data['model']}"
        if kind == "sandbox":
            return (
                f"sandbox: enabled={_flag(data['enabled'])} "
                f"mode={data.get('mode') or 'unknown'}"
            )
        if kind == "rate_limit":
            return f"rate_limit: fallback={data['fallback_agent']}"
        if kind == "active_agent":
            return f"agent: {data['plugin']} ({data['reason']})"
        if kind == "tokens":
            for key in self._tokens:
                self._tokens[key] += int(data.get(key) or 0)
            return None
        if kind == "backoff":
            return (
                f"backoff: {data['backoff_ms']}ms, "
                f"retry at {iso_timestamp(data['retry_at'])}"
            )
        if kind == "backoff_cleared":
            return "backoff cleared, retrying..."
        if kind == "session":
            return f"session {data['action']}: {data['session_id']}"
        if kind == "prompt":
            return f"[PROMPT] {data['prompt'][:100]}..."
        if kind == "plan_modified":
            return "[PLAN] modified"
        if kind == "adapter_mode":
            return f"adapter mode: {data['mode']}"
        return None

    def emit(self, event: LoopEvent) -> None:
        if event.type == "output":
            self._write(event.to_dict()["data"])
            return
        line = self._line(event)
        if not line:
            return
        if self._timestamps and event.timestamp:
            line = f"[{iso_timestamp(event.timestamp)}] {line}"
        self._write(line + "\n")

    def finalize(self, summary: RunSummary) -> None:
        lines = [
            "",
            "--- Summary ---",
            f"exit code: {summary.exit_code}",
            f"duration: {format_duration(summary.duration_ms)}",
            f"iterations: {summary.iterations}",
            f"tasks: {summary.tasks_complete}/{summary.total_tasks}",
            f"commits: {summary.commits}",
            f"lines: +{summary.lines_added} -{summary.lines_removed}",
        ]
        if self._tokens["input"] or self._tokens["output"]:
            lines.append(
                f"Tokens: in={self._tokens['input']} out={self._tokens['output']} "
                f"reasoning={self._tokens['reasoning']}"
            )
        if self._last_model:
            lines.append(f"Model: {self._last_model}")
        self._write("\n".join(lines) + "\n")


def create_output(
    fmt: str, *, timestamps: bool = False, write: Optional[Writer] = None
) -> OutputSink:
    if fmt == "text":
        return TextOutput(timestamps=timestamps, write=write)
    if fmt == "json":
        return JsonOutput(timestamps=timestamps, write=write)
    if fmt == "jsonl":
        return JsonlOutput(timestamps=timestamps, write=write)
    raise ValueError(
        f"Unknown output format: {fmt!r}. Expected one of {', '.join(OUTPUT_FORMATS)}"
    )
