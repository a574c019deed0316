import json

import httpx
import pytest

from ralph_loop.agents.opencode.client import OpenCodeClient, _normalize_sse_event
from ralph_loop.agents.opencode.events import SSEEvent, parse_sse_lines
from ralph_loop.agents.opencode.provider import split_model_id


def test_normalize_sse_event_unwraps_payload() -> None:
    event = SSEEvent(
        event="message",
        data=(
            '{"directory":"/repo","payload":{"type":"message.part.updated","properties":'
            '{"sessionID":"s1"}}}'
        ),
    )
    normalized = _normalize_sse_event(event)
    assert normalized.event == "message.part.updated"
    assert json.loads(normalized.data) == {
        "type": "message.part.updated",
        "properties": {"sessionID": "s1"},
    }


def test_normalize_sse_event_uses_payload_type() -> None:
    event = SSEEvent(event="message", data='{"type":"session.idle","sessionID":"s1"}')
    normalized = _normalize_sse_event(event)
    assert normalized.event == "session.idle"
    assert json.loads(normalized.data) == {"type": "session.idle", "sessionID": "s1"}


def test_normalize_sse_event_keeps_non_json() -> None:
    event = SSEEvent(event="message", data="ping")
    normalized = _normalize_sse_event(event)
    assert normalized.event == "message"
    assert normalized.data == "ping"


def test_normalize_sse_event_preserves_wrapper_metadata() -> None:
    event = SSEEvent(
        event="message",
        data='{"type":"session.status","sessionID":"s42","payload":{"state":"running"}}',
    )
    normalized = _normalize_sse_event(event)
    payload = json.loads(normalized.data)
    assert payload["sessionID"] == "s42"
    assert payload.get("state") == "running"
    assert normalized.event == "session.status"


async def _lines(items):
    for item in items:
        yield item


@pytest.mark.anyio
async def test_parse_sse_lines_dispatches_on_blank_line() -> None:
    raw = [
        ": keepalive",
        "event: session.idle",
        'data: {"sessionID":',
        'data: "s1"}',
        "id: 7",
        "",
        "data: trailing",
    ]
    events = [event async for event in parse_sse_lines(_lines(raw))]
    assert events[0] == SSEEvent(
        event="session.idle", data='{"sessionID":\n"s1"}', id="7"
    )
    assert events[1].event == "message"
    assert events[1].data == "trailing"


def test_split_model_id() -> None:
    assert split_model_id("anthropic/claude-opus-4") == {
        "providerID": "anthropic",
        "modelID": "claude-opus-4",
    }


def _client_with(handler) -> OpenCodeClient:
    client = OpenCodeClient("http://opencode.test")
    client._client = httpx.AsyncClient(
        base_url="http://opencode.test", transport=httpx.MockTransport(handler)
    )
    return client


@pytest.mark.anyio
async def test_prompt_async_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    client = _client_with(handler)
    try:
        await client.prompt_async(
            "s1",
            message="do the thing",
            model={"providerID": "anthropic", "modelID": "claude-opus-4"},
            agent="build",
        )
    finally:
        await client.close()

    assert seen[0].url.path == "/session/s1/prompt_async"
    assert json.loads(seen[0].content) == {
        "parts": [{"type": "text", "text": "do the thing"}],
        "model": {"providerID": "anthropic", "modelID": "claude-opus-4"},
        "agent": "build",
    }


@pytest.mark.anyio
async def test_health_reads_flag() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/global/health"
        return httpx.Response(200, json={"healthy": False})

    client = _client_with(handler)
    try:
        assert await client.health() is False
    finally:
        await client.close()


@pytest.mark.anyio
async def test_stream_events_normalizes() -> None:
    body = (
        'data: {"payload":{"type":"server.connected","properties":{}}}\n\n'
        'event: session.idle\ndata: {"sessionID":"s1"}\n\n'
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["directory"] == "/repo"
        return httpx.Response(
            200, content=body, headers={"content-type": "text/event-stream"}
        )

    client = _client_with(handler)
    try:
        events = [event async for event in client.stream_events(directory="/repo")]
    finally:
        await client.close()

    assert [event.event for event in events] == ["server.connected", "session.idle"]


def test_server_auth_from_env() -> None:
    from ralph_loop.agents.opencode import server_auth_from_env

    assert server_auth_from_env({}) is None
    assert server_auth_from_env({"OPENCODE_SERVER_PASSWORD": "pw"}) == ("opencode", "pw")
    assert server_auth_from_env(
        {"RALPH_SERVER_PASSWORD": "pw", "RALPH_SERVER_USERNAME": "me"}
    ) == ("me", "pw")
