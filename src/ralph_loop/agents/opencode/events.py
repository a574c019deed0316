from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional


@dataclass(frozen=True)
class SSEEvent:
    event: str
    data: str
    id: Optional[str] = None
    retry: Optional[int] = None


async def parse_sse_lines(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    """Parse a text/event-stream body into events (blank line dispatches)."""
    event_type = "message"
    data_lines: list[str] = []
    event_id: Optional[str] = None
    retry: Optional[int] = None

    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield SSEEvent(
                    event=event_type,
                    data="\n".join(data_lines),
                    id=event_id,
                    retry=retry,
                )
            event_type = "message"
            data_lines = []
            retry = None
            continue
        if line.startswith(":"):
            continue
        field_name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field_name == "event":
            event_type = value or "message"
        elif field_name == "data":
            data_lines.append(value)
        elif field_name == "id":
            event_id = value or None
        elif field_name == "retry":
            try:
                retry = int(value)
            except ValueError:
                retry = None

    if data_lines:
        yield SSEEvent(
            event=event_type,
            data="\n".join(data_lines),
            id=event_id,
            retry=retry,
        )
