"""Server-sent events: proxying a stream and parsing it into events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import IO, Iterator, Union

from werkzeug.wrappers import Response

_Source = Union[IO[bytes], IO[str]]


@dataclass(frozen=True)
class Delta:
    """One upstream event: its name (may be empty) and its joined data lines."""

    event: str
    data: str


def sse_headers() -> dict[str, str]:
    """Response headers for an event stream.

    Connection is left to the server: WSGI forbids hop-by-hop headers.
    """
    return {
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    }


def _raw_lines(src: _Source) -> Iterator[Union[bytes, str]]:
    while True:
        line = src.readline()
        if not line:
            return
        yield line


def proxy_sse(src: _Source) -> Response:
    """A streaming 200 response that forwards src line by line.

    Each line is yielded on its own so the server flushes it promptly; the
    source is closed when the response is closed.
    """

    def body() -> Iterator[bytes]:
        for line in _raw_lines(src):
            yield line.encode("utf-8") if isinstance(line, str) else line

    response = Response(body(), status=200, headers=sse_headers())
    close = getattr(src, "close", None)
    if callable(close):
        response.call_on_close(close)
    return response


def stream_deltas(src: _Source) -> Iterator[Delta]:
    """Parse an SSE stream, yielding one Delta per event.

    Comment lines and unknown fields are ignored; a pending event is emitted
    at end of stream.
    """
    event = ""
    data = ""
    for raw in _raw_lines(src):
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        trimmed = line.rstrip("\r\n")
        if trimmed == "":
            if data or event:
                yield Delta(event, data)
            event, data = "", ""
        elif trimmed.startswith("event:"):
            event = trimmed[len("event:"):].strip()
        elif trimmed.startswith("data:"):
            payload = trimmed[len("data:"):]
            if payload.startswith(" "):
                payload = payload[1:]
            if data:
                data += "\n"
            data += payload
    if data or event:
        yield Delta(event, data)