from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

import httpx

from .events import SSEEvent, parse_sse_lines

_WRAPPER_ONLY_KEYS = ("payload", "directory")


def _normalize_sse_event(event: SSEEvent) -> SSEEvent:
    """Unwrap ``{"directory", "payload": {...}}`` envelopes and use the payload type."""
    try:
        payload = json.loads(event.data) if event.data else None
    except (json.JSONDecodeError, TypeError):
        return event
    if not isinstance(payload, dict):
        return event
    inner = payload.get("payload")
    if isinstance(inner, dict):
        merged = dict(inner)
        for key, value in payload.items():
            if key in _WRAPPER_ONLY_KEYS:
                continue
            merged.setdefault(key, value)
        payload = merged
        data = json.dumps(payload)
    else:
        data = event.data
    event_type = payload.get("type")
    return SSEEvent(
        event=str(event_type) if event_type else event.event,
        data=data,
        id=event.id,
        retry=event.retry,
    )


class OpenCodeClient:
    def __init__(
        self,
        base_url: str,
        *,
        auth: Optional[tuple[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            timeout=timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _dir_params(self, directory: Optional[str]) -> dict[str, str]:
        return {"directory": directory} if directory else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        kwargs: dict[str, Any] = {"params": params, "json": json}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await self._client.request(method, path, **kwargs)
        response.raise_for_status()
        if response.content:
            try:
                return response.json()
            except ValueError:
                return response.text
        return None

    async def health(self, *, timeout: Optional[float] = None) -> bool:
        payload = await self._request("GET", "/global/health", timeout=timeout)
        if isinstance(payload, dict):
            return bool(payload.get("healthy", True))
        return True

    async def current_project(self, directory: Optional[str] = None) -> Any:
        return await self._request(
            "GET", "/project/current", params=self._dir_params(directory)
        )

    async def create_session(
        self,
        *,
        title: Optional[str] = None,
        directory: Optional[str] = None,
    ) -> Any:
        payload: dict[str, Any] = {}
        if title:
            payload["title"] = title
        return await self._request(
            "POST", "/session", params=self._dir_params(directory), json=payload
        )

    async def prompt_async(
        self,
        session_id: str,
        *,
        message: str,
        model: Optional[dict[str, str]] = None,
        agent: Optional[str] = None,
    ) -> Any:
        """Queue a prompt; progress arrives on the event stream."""
        payload: dict[str, Any] = {
            "parts": [{"type": "text", "text": message}],
        }
        if model:
            payload["model"] = model
        if agent:
            payload["agent"] = agent
        return await self._request(
            "POST", f"/session/{session_id}/prompt_async", json=payload
        )

    async def abort(self, session_id: str) -> Any:
        return await self._request("POST", f"/session/{session_id}/abort")

    async def stream_events(
        self, *, directory: Optional[str] = None
    ) -> AsyncIterator[SSEEvent]:
        params = self._dir_params(directory)
        # No read timeout: the stream idles while the model thinks.
        timeout = httpx.Timeout(self._timeout, read=None)
        async with self._client.stream(
            "GET", "/event", params=params, timeout=timeout
        ) as response:
            response.raise_for_status()
            async for sse in parse_sse_lines(response.aiter_lines()):
                yield _normalize_sse_event(sse)


__all__ = ["OpenCodeClient"]
