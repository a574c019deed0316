from ralph_loop.agents.base import (
    BackendEvent,
    ModelReported,
    PlanFileEdited,
    ReasoningLine,
    ServerConnected,
    SessionFailed,
    SessionIdle,
    TokensReported,
    ToolCompleted,
)
from ralph_loop.agents.opencode.translate import (
    OpenCodeEventTranslator,
    extract_session_id,
    matches_plan_file,
)


def _event(kind: str, **properties) -> BackendEvent:
    return BackendEvent(type=kind, payload={"type": kind, "properties": properties})


def _text(session: str, text: str, part_id: str = "p1") -> BackendEvent:
    return _event(
        "message.part.updated",
        part={"id": part_id, "sessionID": session, "type": "text", "text": text},
    )


def test_server_connected() -> None:
    translator = OpenCodeEventTranslator("s1", "plan.md")
    assert translator.translate(_event("server.connected")) == [ServerConnected()]


def test_idle_and_error_filtered_by_session() -> None:
    translator = OpenCodeEventTranslator("s1", "plan.md")
    assert translator.translate(_event("session.idle", sessionID="s2")) == []
    assert translator.translate(_event("session.idle", sessionID="s1")) == [
        SessionIdle("s1")
    ]
    failed = translator.translate(
        _event(
            "session.error",
            sessionID="s1",
            error={"name": "APIError", "data": {"message": "429 rate limit"}},
        )
    )
    assert failed == [SessionFailed("s1", "429 rate limit")]
    assert translator.translate(_event("session.error", sessionID="s1")) == []


def test_completed_tool_part() -> None:
    translator = OpenCodeEventTranslator("s1", "plan.md")
    pending = _event(
        "message.part.updated",
        part={"sessionID": "s1", "type": "tool", "tool": "bash", "state": {"status": "running"}},
    )
    assert translator.translate(pending) == []

    done = _event(
        "message.part.updated",
        part={
            "sessionID": "s1",
            "type": "tool",
            "tool": "read",
            "state": {
                "status": "completed",
                "input": {"filePath": "src/app.py"},
                "time": {"start": 1, "end": 2},
            },
        },
    )
    assert translator.translate(done) == [
        ToolCompleted(
            name="read",
            title='{"filePath":"src/app.py"}',
            detail="src/app.py",
            verbose=True,
            timestamp=2,
        )
    ]


def test_text_emits_each_complete_line_once() -> None:
    translator = OpenCodeEventTranslator("s1", "plan.md")
    assert translator.translate(_text("s1", "Thinking about")) == []
    assert translator.translate(_text("s1", "Thinking about it\nNext")) == [
        ReasoningLine("Thinking about it")
    ]
    assert translator.translate(_text("s1", "Thinking about it\nNext step\n")) == [
        ReasoningLine("Next step")
    ]
    assert translator.translate(_text("s2", "other\n")) == []


def test_long_reasoning_line_truncated() -> None:
    translator = OpenCodeEventTranslator("s1", "plan.md")
    (line,) = translator.translate(_text("s1", "x" * 200 + "\n"))
    assert len(line.text) == 80
    assert line.text.endswith("...")


def test_step_finish_tokens() -> None:
    translator = OpenCodeEventTranslator("s1", "plan.md")
    event = _event(
        "message.part.updated",
        part={
            "sessionID": "s1",
            "type": "step-finish",
            "tokens": {"input": 10, "output": 3, "reasoning": 1, "cache": {"read": 7}},
        },
    )
    assert translator.translate(event) == [
        TokensReported(input=10, output=3, reasoning=1, cache_read=7, cache_write=0)
    ]


def test_assistant_model_reported() -> None:
    translator = OpenCodeEventTranslator("s1", "plan.md")
    event = _event(
        "message.updated",
        info={
            "sessionID": "s1",
            "role": "assistant",
            "providerID": "anthropic",
            "modelID": "claude-opus-4",
        },
    )
    assert translator.translate(event) == [ModelReported("anthropic/claude-opus-4")]


def test_plan_file_edit() -> None:
    translator = OpenCodeEventTranslator("s1", "docs/plan.md")
    assert translator.translate(_event("file.edited", file="/repo/docs/plan.md")) == [
        PlanFileEdited("/repo/docs/plan.md")
    ]
    assert translator.translate(_event("file.edited", file="/repo/other.md")) == []


def test_matches_plan_file() -> None:
    assert matches_plan_file("plan.md", "plan.md")
    assert matches_plan_file("C:\\repo\\plan.md", "plan.md")
    assert not matches_plan_file("myplan.md", "plan.md")
    assert not matches_plan_file("", "plan.md")


def test_extract_session_id_shapes() -> None:
    assert extract_session_id({"sessionID": "a"}) == "a"
    assert extract_session_id({"properties": {"info": {"sessionID": "b"}}}) == "b"
    assert extract_session_id({"session": {"session_id": "c"}}) == "c"
    assert extract_session_id("nope") is None
