from __future__ import annotations

import json
from pathlib import PurePath
from typing import Any, Optional

from ..base import (
    BackendEvent,
    ModelReported,
    PlanFileEdited,
    ReasoningLine,
    ServerConnected,
    SessionFailed,
    SessionIdle,
    StreamUpdate,
    TokensReported,
    ToolCompleted,
)

MAX_REASONING_CHARS = 80


def extract_session_id(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("sessionID", "sessionId", "session_id"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    properties = payload.get("properties")
    if isinstance(properties, dict):
        value = properties.get("sessionID")
        if isinstance(value, str) and value:
            return value
        for nested in ("part", "info"):
            inner = properties.get(nested)
            if isinstance(inner, dict):
                value = inner.get("sessionID")
                if isinstance(value, str) and value:
                    return value
    session = payload.get("session")
    if isinstance(session, dict):
        return extract_session_id(session)
    return None


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def tool_title(state: dict[str, Any]) -> str:
    title = state.get("title")
    if isinstance(title, str) and title:
        return title
    tool_input = state.get("input")
    if isinstance(tool_input, dict) and tool_input:
        return _compact_json(tool_input)
    return "Unknown"


def tool_detail(tool_input: Any) -> Optional[str]:
    if not isinstance(tool_input, dict) or not tool_input:
        return None
    for key in ("filePath", "path", "command"):
        value = tool_input.get(key)
        if value:
            return str(value)
    return _compact_json(tool_input)


def truncate_line(line: str, limit: int = MAX_REASONING_CHARS) -> str:
    if len(line) <= limit:
        return line
    return line[: limit - 3] + "..."


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        for key in ("message", "name"):
            if error.get(key):
                return str(error[key])
    if isinstance(error, str) and error:
        return error
    return "Unknown session error"


def matches_plan_file(file_path: str, plan_file: str) -> bool:
    if not file_path or not plan_file:
        return False
    if file_path == plan_file:
        return True
    normalized = file_path.replace("\\", "/")
    name = PurePath(plan_file.replace("\\", "/")).name
    return normalized.endswith("/" + name) or normalized == name


class OpenCodeEventTranslator:
    """Translate OpenCode SSE payloads for one session into stream updates.

    Text parts arrive as the full accumulated text on every update; only
    lines that have been terminated by a newline are emitted, once each.
    """

    def __init__(self, session_id: str, plan_file: str) -> None:
        self.session_id = session_id
        self.plan_file = plan_file
        self._emitted_text: dict[str, str] = {}

    def translate(self, event: BackendEvent) -> list[StreamUpdate]:
        kind = event.type
        props = event.properties
        if kind == "server.connected":
            return [ServerConnected()]
        if kind == "message.updated":
            return self._message_updated(props)
        if kind == "message.part.updated":
            return self._part_updated(props)
        if kind == "session.idle":
            if extract_session_id(event.payload) == self.session_id:
                return [SessionIdle(self.session_id)]
            return []
        if kind == "session.error":
            if extract_session_id(event.payload) != self.session_id:
                return []
            error = props.get("error")
            if not error:
                return []
            return [SessionFailed(self.session_id, _error_message(error))]
        if kind in ("file.edited", "file.watcher.updated"):
            file_path = props.get("file")
            if isinstance(file_path, str) and matches_plan_file(
                file_path, self.plan_file
            ):
                return [PlanFileEdited(file_path)]
        return []

    def _message_updated(self, props: dict[str, Any]) -> list[StreamUpdate]:
        info = props.get("info")
        if not isinstance(info, dict):
            return []
        if info.get("sessionID") != self.session_id or info.get("role") != "assistant":
            return []
        provider_id = info.get("providerID")
        model_id = info.get("modelID")
        if provider_id and model_id:
            return [ModelReported(f"{provider_id}/{model_id}")]
        return []

    def _part_updated(self, props: dict[str, Any]) -> list[StreamUpdate]:
        part = props.get("part")
        if not isinstance(part, dict) or part.get("sessionID") != self.session_id:
            return []
        part_type = part.get("type")
        if part_type == "tool":
            return self._tool_part(part)
        if part_type == "text":
            return self._text_part(part)
        if part_type == "step-finish":
            tokens = part.get("tokens")
            if not isinstance(tokens, dict):
                return []
            cache = tokens.get("cache") if isinstance(tokens.get("cache"), dict) else {}
            return [
                TokensReported(
                    input=_as_int(tokens.get("input")),
                    output=_as_int(tokens.get("output")),
                    reasoning=_as_int(tokens.get("reasoning")),
                    cache_read=_as_int(cache.get("read")),
                    cache_write=_as_int(cache.get("write")),
                )
            ]
        return []

    def _tool_part(self, part: dict[str, Any]) -> list[StreamUpdate]:
        state = part.get("state")
        if not isinstance(state, dict) or state.get("status") != "completed":
            return []
        name = str(part.get("tool") or "tool")
        timing = state.get("time") if isinstance(state.get("time"), dict) else {}
        end = timing.get("end")
        return [
            ToolCompleted(
                name=name,
                title=tool_title(state),
                detail=tool_detail(state.get("input")),
                verbose=name == "read",
                timestamp=end if isinstance(end, int) else None,
            )
        ]

    def _text_part(self, part: dict[str, Any]) -> list[StreamUpdate]:
        text = part.get("text")
        if not isinstance(text, str) or not text:
            return []
        part_id = str(part.get("id") or "")
        emitted = self._emitted_text.get(part_id, "")
        if not text.startswith(emitted):
            # The part was rewritten; start over from its current text.
            emitted = ""
        pending = text[len(emitted) :]
        last_newline = pending.rfind("\n")
        if last_newline < 0:
            return []
        complete = pending[: last_newline + 1]
        self._emitted_text[part_id] = emitted + complete
        updates: list[StreamUpdate] = []
        for line in complete.split("\n"):
            line = line.strip()
            if line:
                updates.append(ReasoningLine(truncate_line(line)))
        return updates
