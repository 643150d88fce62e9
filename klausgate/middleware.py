"""WSGI middleware for request ids and structured access logging."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Iterable, Iterator, Optional

REQUEST_ID_HEADER = "X-Request-Id"
"""The header used for inbound and outbound request ids."""

ENVIRON_KEY = "klausgate.request_id"

_ENVIRON_HEADER = "HTTP_X_REQUEST_ID"

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]


class _Finished:
    """Wraps a WSGI body and runs a callback once the server closes it."""

    def __init__(self, body: Iterable[bytes], callback: Callable[[], None]) -> None:
        self._body = body
        self._callback = callback
        self._done = False

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._body)

    def close(self) -> None:
        try:
            close = getattr(self._body, "close", None)
            if close is not None:
                close()
        finally:
            if not self._done:
                self._done = True
                self._callback()


def new_request_id() -> str:
    """Sixteen random hex digits."""
    try:
        return os.urandom(8).hex()
    except NotImplementedError:
        return "req-fallback"


def request_id_from_environ(environ: dict) -> str:
    """The request id stored on environ, or an empty string."""
    value = environ.get(ENVIRON_KEY, "")
    return value if isinstance(value, str) else ""


def request_id_middleware(app: WSGIApp) -> WSGIApp:
    """Read or generate a request id, store it on environ and echo it back."""

    def with_request_id(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        request_id = environ.get(_ENVIRON_HEADER, "") or new_request_id()
        environ[ENVIRON_KEY] = request_id

        def add_header(status: str, headers: list, exc_info: Any = None) -> Any:
            wanted = REQUEST_ID_HEADER.lower()
            if not any(name.lower() == wanted for name, _ in headers):
                headers = [*headers, (REQUEST_ID_HEADER, request_id)]
            return start_response(status, headers, exc_info)

        return app(environ, add_header)

    return with_request_id


def access_log_middleware(app: WSGIApp, logger: Optional[logging.Logger] = None) -> WSGIApp:
    """Emit one structured log line per request once its response is closed."""
    log = logger or logging.getLogger("klausgate.access")

    def logged(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        start = time.perf_counter()
        status = 200
        seen = False

        def capture(status_line: str, headers: list, exc_info: Any = None) -> Any:
            nonlocal status, seen
            if not seen:
                status = int(status_line.split(None, 1)[0])
                seen = True
            return start_response(status_line, headers, exc_info)

        def emit() -> None:
            fields = {
                "method": environ.get("REQUEST_METHOD", ""),
                "path": environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", ""),
                "status": status,
                "duration": time.perf_counter() - start,
                "request_id": request_id_from_environ(environ),
                "remote": environ.get("REMOTE_ADDR", ""),
            }
            log.info(
                "http request method=%s path=%s status=%d duration=%.6fs request_id=%s remote=%s",
                fields["method"],
                fields["path"],
                fields["status"],
                fields["duration"],
                fields["request_id"],
                fields["remote"],
                extra=fields,
            )

        return _Finished(app(environ, capture), emit)

    return logged