"""The public and admin HTTP servers and their lifecycle.

The public server hosts channel adapters; with none mounted it answers 404
while the request-id, access-log and metrics middleware still run. The admin
server serves /healthz, /readyz and /metrics.
"""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
from dataclasses import dataclass
from socketserver import ThreadingMixIn
from typing import Any, Callable, Iterable, Optional
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from werkzeug.exceptions import HTTPException
from werkzeug.routing import Map, Rule
from werkzeug.wrappers import Response

from klausgate.metrics import Metrics
from klausgate.middleware import access_log_middleware, request_id_middleware

DEFAULT_SHUTDOWN_TIMEOUT = 15.0
"""Seconds allowed for each server to drain on shutdown."""

READINESS_TIMEOUT = 2.0
"""Seconds a readiness check may take before the gateway reports not ready."""

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]
ReadinessFunc = Callable[[], Any]
"""Raises when the gateway is not ready to serve traffic."""

_http_log = logging.getLogger("klausgate.http")


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, fmt: str, *args: Any) -> None:
        """Send the handler's own lines to a debug logger; access lines come from middleware."""
        _http_log.debug("%s - %s", self.address_string(), fmt % args)


@dataclass
class Options:
    """Configuration of the public and admin servers."""

    public_address: str = ""
    admin_address: str = ""
    logger: Optional[logging.Logger] = None
    metrics: Optional[Metrics] = None
    ready: Optional[ReadinessFunc] = None
    public: Optional[WSGIApp] = None


def _plain(code: int, body: str) -> Response:
    return Response(body, status=code, content_type="text/plain; charset=utf-8")


def _not_found(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
    return _plain(404, "404 page not found")(environ, start_response)


def _split_address(address: str) -> tuple[str, int]:
    if not address:
        return "0.0.0.0", 80
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r}: missing port in address")
    if not port.isdigit():
        raise ValueError(f"address {address!r}: unknown port")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


class Server:
    """Owns the public and admin HTTP servers."""

    def __init__(self, options: Optional[Options] = None) -> None:
        opts = dataclasses.replace(options) if options is not None else Options()
        if opts.logger is None:
            opts.logger = logging.getLogger("klausgate")
        if opts.metrics is None:
            opts.metrics = Metrics()
        if opts.ready is None:
            opts.ready = lambda: None
        self._options = opts
        self._logger: logging.Logger = opts.logger
        self._metrics: Metrics = opts.metrics

        inner = opts.public if opts.public is not None else _not_found
        self._public = request_id_middleware(
            access_log_middleware(self._metrics.middleware("public", inner), self._logger)
        )

        self._admin_routes = Map(
            [
                Rule("/healthz", endpoint="healthz", methods=["GET"]),
                Rule("/readyz", endpoint="readyz", methods=["GET"]),
                Rule("/metrics", endpoint="metrics"),
            ]
        )
        self._admin = request_id_middleware(access_log_middleware(self._serve_admin, self._logger))

        self._lock = threading.Lock()
        self._servers: list[tuple[str, WSGIServer, Optional[threading.Thread]]] = []

    def public_handler(self) -> WSGIApp:
        """The wrapped public WSGI application."""
        return self._public

    def admin_handler(self) -> WSGIApp:
        """The admin WSGI application."""
        return self._admin

    def _serve_admin(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        adapter = self._admin_routes.bind_to_environ(environ)
        try:
            endpoint, _ = adapter.match()
        except HTTPException as exc:
            return exc(environ, start_response)
        if endpoint == "metrics":
            return self._metrics.handler(environ, start_response)
        if endpoint == "healthz":
            response = _plain(200, "ok")
        else:
            problem = self._check_ready()
            if problem is None:
                response = _plain(200, "ready")
            else:
                response = _plain(503, f"not ready: {problem}")
        return response(environ, start_response)

    def _check_ready(self) -> Optional[str]:
        outcome: list[Optional[BaseException]] = []
        ready = self._options.ready

        def probe() -> None:
            try:
                ready()
            except Exception as exc:  # any failure means not ready
                outcome.append(exc)
            else:
                outcome.append(None)

        worker = threading.Thread(target=probe, name="readiness-probe", daemon=True)
        worker.start()
        worker.join(READINESS_TIMEOUT)
        if not outcome:
            return "readiness check timed out"
        return None if outcome[0] is None else str(outcome[0])

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Serve both servers until stop_event is set or one of them fails.

        Both servers are drained on the way out; a failure is re-raised.
        """
        stop = stop_event if stop_event is not None else threading.Event()
        targets = [
            ("public", _split_address(self._options.public_address), self._public),
            ("admin", _split_address(self._options.admin_address), self._admin),
        ]
        failures: "queue.Queue[BaseException]" = queue.Queue()

        bound: list[tuple[str, WSGIServer]] = []
        try:
            for label, (host, port), app in targets:
                httpd = make_server(
                    host, port, app, server_class=_ThreadingWSGIServer, handler_class=_QuietHandler
                )
                bound.append((label, httpd))
                with self._lock:
                    self._servers.append((label, httpd, None))
        except OSError as exc:
            self._logger.error("server failure: %s", exc)
            self.shutdown()
            raise

        with self._lock:
            self._servers = []
            for label, httpd in bound:
                thread = threading.Thread(
                    target=self._serve, args=(httpd, failures), name=f"{label}-server", daemon=True
                )
                self._servers.append((label, httpd, thread))
                thread.start()
                host, port = httpd.server_address[:2]
                self._logger.info(
                    "%s server listening on %s:%s", label, host, port, extra={"address": f"{host}:{port}"}
                )

        try:
            while not stop.is_set():
                try:
                    failure = failures.get(timeout=0.1)
                except queue.Empty:
                    continue
                self._logger.error("server failure: %s", failure)
                self.shutdown()
                raise failure
        except KeyboardInterrupt:
            pass
        self.shutdown()

    @staticmethod
    def _serve(httpd: WSGIServer, failures: "queue.Queue[BaseException]") -> None:
        try:
            httpd.serve_forever(poll_interval=0.1)
        except Exception as exc:  # reported to run()
            failures.put(exc)

    def shutdown(self) -> None:
        """Stop both servers, giving each DEFAULT_SHUTDOWN_TIMEOUT to drain."""
        with self._lock:
            servers, self._servers = self._servers, []
        for label, httpd, thread in servers:
            if thread is not None:
                stopper = threading.Thread(target=httpd.shutdown, daemon=True)
                stopper.start()
                stopper.join(DEFAULT_SHUTDOWN_TIMEOUT)
                if stopper.is_alive():
                    self._logger.warning("%s server shutdown timed out", label)
            try:
                httpd.server_close()
            except OSError as exc:
                self._logger.warning("%s server shutdown: %s", label, exc)