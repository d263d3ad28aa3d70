"""Minimal Server-Sent Events line decoder for the relay's event stream."""

from typing import AsyncIterator


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of every SSE frame.

    Multi-line data fields are joined with newlines; comments, ``event``,
    ``id`` and ``retry`` fields are ignored. A trailing frame without a blank
    line terminator is still emitted when the stream ends.
    """
    buffer: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field != "data":
            continue
        buffer.append(value[1:] if value.startswith(" ") else value)
    if buffer:
        yield "\n".join(buffer)
