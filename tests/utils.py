from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

from src.assistant_stream.domain.errors import StreamError
from src.assistant_stream.domain.frames import Frame, decode_frame
from src.assistant_stream.infrastructure.transport_guard import FrameSink


class ManualHandle:
    def __init__(self, when: float, seq: int, callback: Callable[..., Any], args: tuple) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic clock: callbacks run only when the test advances time."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._seq = 0
        self._queue: List[ManualHandle] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualHandle:
        self._seq += 1
        handle = ManualHandle(self._now + max(0.0, delay), self._seq, callback, args)
        self._queue.append(handle)
        return handle

    def call_soon_threadsafe(self, callback: Callable[..., Any], *args: Any) -> None:
        self.call_later(0.0, callback, *args)

    @property
    def pending(self) -> int:
        return sum(1 for handle in self._queue if not handle.cancelled)

    def advance(self, seconds: float = 0.0) -> None:
        target = self._now + seconds
        while True:
            due = [h for h in self._queue if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._queue.remove(handle)
            self._now = max(self._now, handle.when)
            handle.callback(*handle.args)
        self._queue = [h for h in self._queue if not h.cancelled]
        self._now = target


def make_frame(event: str, payload: Optional[Dict[str, Any]] = None) -> Frame:
    return decode_frame(event, json.dumps(payload) if payload is not None else "")


class FakeTransport:
    def __init__(self, sink: FrameSink, url: str = "") -> None:
        self.sink = sink
        self.url = url
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.sink.on_frame(make_frame(event, payload))

    def delta(self, text: str, seq: Optional[int] = None, client_message_id: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"text": text}
        if seq is not None:
            payload["seq"] = seq
        if client_message_id is not None:
            payload["clientMessageId"] = client_message_id
        self.emit("delta", payload)

    def fail(self, error: StreamError) -> None:
        self.sink.on_error(error)


class FakeOpener:
    """Driver opener: ``opener(url)(sink)`` records the URL and returns a ``FakeTransport``."""

    def __init__(self) -> None:
        self.urls: List[str] = []
        self.transports: List[FakeTransport] = []
        self.errors: List[Exception] = []

    def __call__(self, url: str) -> Callable[[FrameSink], FakeTransport]:
        def open_fn(sink: FrameSink) -> FakeTransport:
            self.urls.append(url)
            if self.errors:
                raise self.errors.pop(0)
            transport = FakeTransport(sink, url)
            self.transports.append(transport)
            return transport

        return open_fn

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


class RecordingListener:
    def __init__(self) -> None:
        self.frames: List[Frame] = []
        self.errors: List[StreamError] = []

    def on_frame(self, frame: Frame) -> None:
        self.frames.append(frame)

    def on_error(self, error: StreamError) -> None:
        self.errors.append(error)
