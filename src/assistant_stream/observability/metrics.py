"""Prometheus metrics for the streaming client and its HTTP surface.

Counters cover frame traffic and stream outcomes; the HTTP middleware records
request latency per method/path/status.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

FRAMES_RECEIVED = Counter(
    "assistant_stream_frames_total",
    "Frames received from the streaming connection",
    labelnames=("type",),
)

FRAGMENTS_DROPPED = Counter(
    "assistant_stream_fragments_dropped_total",
    "Delta fragments dropped by the ordering/dedup filter",
    labelnames=("reason",),
)

STREAM_RETRIES = Counter(
    "assistant_stream_retries_total",
    "Retries scheduled after retryable transport errors",
)

STREAM_OUTCOMES = Counter(
    "assistant_stream_outcomes_total",
    "Terminal outcomes of streamed turns",
    labelnames=("outcome",),
)

STORE_RECOVERIES = Counter(
    "assistant_stream_store_recoveries_total",
    "Message store operations that recovered a missing turn",
    labelnames=("operation",),
)

MODE_TRANSITIONS = Counter(
    "assistant_stream_mode_transitions_total",
    "Session mode transitions",
    labelnames=("from_mode", "to_mode"),
)

# Streams run from sub-second replies to multi-minute generations
STREAM_DURATION = Histogram(
    "assistant_stream_duration_seconds",
    "Wall time from stream start to completion",
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

REQUEST_LATENCY = Histogram(
    "assistant_stream_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)


def sanitize_path(path: str) -> str:
    """Reduce a request path to its top-level segment to keep label cardinality low."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
