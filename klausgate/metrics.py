"""Request metrics rendered in the Prometheus text exposition format."""

from __future__ import annotations

import gc
import math
import platform
import threading
import time
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

NAMESPACE = "klaus_gateway"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
"""Histogram bucket bounds in seconds."""

_REQUEST_LABELS = ("route", "method", "status")
_PROCESS_START = time.time()

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _labels_text(pairs: Sequence[tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{name}="{_escape_label(value)}"' for name, value in pairs) + "}"


def _header(name: str, help_text: str, kind: str) -> list[str]:
    escaped = help_text.replace("\\", "\\\\").replace("\n", "\\n")
    return [f"# HELP {name} {escaped}", f"# TYPE {name} {kind}"]


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


class _LabelledVec:
    def __init__(self, name: str, help_text: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.help = help_text
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _values(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"{self.name}: expected labels {sorted(self.label_names)}, got {sorted(labels)}"
            )
        return tuple(str(labels[name]) for name in self.label_names)

    def _pairs(self, values: tuple[str, ...]) -> list[tuple[str, str]]:
        return list(zip(self.label_names, values))


class CounterVec(_LabelledVec):
    """A family of monotonically increasing counters keyed by labels."""

    def __init__(self, name: str, help_text: str, label_names: Sequence[str]) -> None:
        super().__init__(name, help_text, label_names)
        self._counts: dict[tuple[str, ...], float] = {}

    def inc(self, labels: Mapping[str, str]) -> None:
        """Add one to the counter for labels."""
        values = self._values(labels)
        with self._lock:
            self._counts[values] = self._counts.get(values, 0.0) + 1.0

    def render(self) -> str:
        """The family in text exposition format."""
        lines = _header(self.name, self.help, "counter")
        with self._lock:
            series = sorted(self._counts.items())
        for values, count in series:
            lines.append(f"{self.name}{_labels_text(self._pairs(values))} {_format_value(count)}")
        return "\n".join(lines) + "\n"


class HistogramVec(_LabelledVec):
    """A family of cumulative histograms keyed by labels."""

    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: Sequence[str],
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        super().__init__(name, help_text, label_names)
        bounds = tuple(float(b) for b in buckets if not math.isinf(b))
        if not bounds or any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError(f"{name}: buckets must be non-empty and strictly increasing")
        self.buckets = bounds
        self._series: dict[tuple[str, ...], tuple[list[int], list[float]]] = {}

    def observe(self, labels: Mapping[str, str], value: float) -> None:
        """Record one observation of value for labels."""
        values = self._values(labels)
        with self._lock:
            counts, totals = self._series.setdefault(
                values, ([0] * len(self.buckets), [0.0, 0.0])
            )
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[index] += 1
            totals[0] += value
            totals[1] += 1

    def render(self) -> str:
        """The family in text exposition format."""
        lines = _header(self.name, self.help, "histogram")
        with self._lock:
            series = sorted(
                (values, list(counts), list(totals))
                for values, (counts, totals) in self._series.items()
            )
        for values, counts, (total, count) in series:
            pairs = self._pairs(values)
            for bound, hits in zip(self.buckets, counts):
                labels = _labels_text([*pairs, ("le", _format_value(bound))])
                lines.append(f"{self.name}_bucket{labels} {hits}")
            labels = _labels_text([*pairs, ("le", "+Inf")])
            lines.append(f"{self.name}_bucket{labels} {_format_value(count)}")
            lines.append(f"{self.name}_sum{_labels_text(pairs)} {_format_value(total)}")
            lines.append(f"{self.name}_count{_labels_text(pairs)} {_format_value(count)}")
        return "\n".join(lines) + "\n"


def _runtime_text() -> str:
    lines = _header("python_threads", "Number of live threads.", "gauge")
    lines.append(f"python_threads {threading.active_count()}")
    lines += _header(
        "python_gc_collections_total", "Garbage collections per generation.", "counter"
    )
    for generation, stats in enumerate(gc.get_stats()):
        lines.append(
            f'python_gc_collections_total{{generation="{generation}"}} {stats["collections"]}'
        )
    lines += _header(
        "process_start_time_seconds",
        "Start time of the process since unix epoch in seconds.",
        "gauge",
    )
    lines.append(f"process_start_time_seconds {_format_value(_PROCESS_START)}")
    lines += _header("python_info", "Python platform information.", "gauge")
    info = _labels_text(
        [
            ("implementation", platform.python_implementation()),
            ("version", platform.python_version()),
        ]
    )
    lines.append(f"python_info{info} 1")
    return "\n".join(lines) + "\n"


class Metrics:
    """The collectors the gateway exposes: runtime figures plus request RED metrics."""

    def __init__(self) -> None:
        self.requests_total = CounterVec(
            f"{NAMESPACE}_requests_total",
            "Total HTTP requests on the public mux, labelled by route and status.",
            _REQUEST_LABELS,
        )
        self.request_duration = HistogramVec(
            f"{NAMESPACE}_request_duration_seconds",
            "HTTP request latency on the public mux, labelled by route and status.",
            _REQUEST_LABELS,
        )

    def render(self) -> str:
        """Every collector in text exposition format."""
        return _runtime_text() + self.requests_total.render() + self.request_duration.render()

    def handler(self, environ: dict, start_response: Callable[..., Any]) -> list[bytes]:
        """WSGI endpoint serving the metrics page."""
        body = self.render().encode("utf-8")
        start_response(
            "200 OK",
            [("Content-Type", CONTENT_TYPE), ("Content-Length", str(len(body)))],
        )
        return [body]

    def middleware(self, route: str, app: WSGIApp) -> WSGIApp:
        """Wrap app so each request adds a counter and a latency sample.

        The sample is taken when the response body is closed, so streaming
        responses are timed in full.
        """

        def instrumented(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
            start = time.perf_counter()
            status = 200
            seen = False

            def capture(status_line: str, headers: list, exc_info: Any = None) -> Any:
                nonlocal status, seen
                if not seen:
                    status = int(status_line.split(None, 1)[0])
                    seen = True
                return start_response(status_line, headers, exc_info)

            def record() -> None:
                labels = {
                    "route": route,
                    "method": environ.get("REQUEST_METHOD", ""),
                    "status": str(status),
                }
                self.requests_total.inc(labels)
                self.request_duration.observe(labels, time.perf_counter() - start)

            return _Finished(app(environ, capture), record)

        return instrumented