"""Server-sent events decoding for remote transports."""

from dataclasses import dataclass
from typing import AsyncIterator, Optional


@dataclass
class ServerSentEvent:
    """A single dispatched event."""
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """
    Decode an event stream from its lines.

    Args:
        lines: Lines without terminators, blank lines included

    Yields:
        Events in arrival order; an unterminated trailing event is dropped
    """
    event: Optional[str] = None
    data: list[str] = []
    last_id: Optional[str] = None
    retry: Optional[int] = None

    async for line in lines:
        if not line:
            if data or event:
                yield ServerSentEvent(
                    event=event or "message",
                    data="\n".join(data),
                    id=last_id,
                    retry=retry,
                )
            event, data, retry = None, [], None
            continue

        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
        elif field == "id":
            if "\0" not in value:
                last_id = value
        elif field == "retry":
            if value.isdigit():
                retry = int(value)
