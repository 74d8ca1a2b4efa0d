from __future__ import annotations

import logging
import threading
from typing import Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..core.scheduler import Scheduler
from ..domain.errors import FatalError, ProtocolError, StreamError, TransportError
from ..domain.frames import Frame, decode_frame, iter_sse_events
from ..observability.metrics import FRAGMENTS_DROPPED
from .transport_guard import FrameSink

_logger = logging.getLogger("assistant_stream.transport.sse")


def build_session() -> requests.Session:
    session = requests.Session()
    # Connect-level retries only; stream-level retries belong to the driver.
    retry = Retry(total=1, connect=1, read=0, status=0, backoff_factor=0.2)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def error_for_status(status: int, reason: str = "") -> StreamError:
    if status in (401, 403):
        return FatalError(f"Unauthorized stream request ({status})", status=status)
    if status == 429:
        return FatalError("Rate limit exceeded", status=status)
    if status == 408 or status >= 500:
        return TransportError(f"Server connection error ({status} {reason})".strip(), status=status)
    return FatalError(f"Stream request rejected ({status} {reason})".strip(), status=status)


class SSETransport:
    """One HTTP streaming response read on a worker thread.

    The reader only parses; every frame and error is handed to the event
    queue via ``call_soon_threadsafe``, where the guard and driver run.
    """

    def __init__(
        self,
        url: str,
        sink: FrameSink,
        scheduler: Scheduler,
        *,
        session: Optional[requests.Session] = None,
        timeout: Tuple[float, Optional[float]] = (3.0, None),
        headers: Optional[dict] = None,
    ) -> None:
        self.url = url
        self._sink = sink
        self._scheduler = scheduler
        self._session = session or build_session()
        self._timeout = timeout
        self._headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache", **(headers or {})}
        self._closed = threading.Event()
        self._response: Optional[requests.Response] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> "SSETransport":
        self._thread = threading.Thread(target=self._run, name="sse-reader", daemon=True)
        self._thread.start()
        return self

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        response = self._response
        if response is not None:
            try:
                response.close()
            except Exception as exc:
                _logger.debug("sse_close_failed", extra={"err": str(exc)})

    def _dispatch_frame(self, frame: Frame) -> None:
        if not self._closed.is_set():
            self._scheduler.call_soon_threadsafe(self._sink.on_frame, frame)

    def _dispatch_error(self, error: StreamError) -> None:
        if not self._closed.is_set():
            self._scheduler.call_soon_threadsafe(self._sink.on_error, error)

    def _run(self) -> None:
        saw_terminal = False
        try:
            with self._session.get(
                self.url,
                headers=self._headers,
                stream=True,
                timeout=self._timeout,
            ) as resp:
                self._response = resp
                if resp.status_code >= 400:
                    self._dispatch_error(error_for_status(resp.status_code, resp.reason or ""))
                    return
                # SSE bodies are always UTF-8; requests defaults text/* without charset to ISO-8859-1.
                resp.encoding = "utf-8"
                for event, data in iter_sse_events(resp.iter_lines(decode_unicode=True)):
                    if self._closed.is_set():
                        return
                    try:
                        frame = decode_frame(event, data)
                    except ProtocolError as exc:
                        FRAGMENTS_DROPPED.labels(reason="malformed").inc()
                        _logger.warning("sse_frame_dropped", extra={"event": event, "err": exc.message})
                        continue
                    self._dispatch_frame(frame)
                    if frame.is_terminal:
                        saw_terminal = True
                        return
        except requests.exceptions.Timeout as exc:
            self._dispatch_error(TransportError(f"Connection timeout: {exc}", code="TIMEOUT"))
            return
        except requests.exceptions.RequestException as exc:
            if self._closed.is_set():
                return
            self._dispatch_error(TransportError(f"Network connection error: {exc}", code="NETWORK_ERROR"))
            return
        except Exception as exc:
            # Reading from a response closed under us raises assorted urllib3 errors.
            if self._closed.is_set():
                return
            _logger.exception("sse_reader_failed")
            self._dispatch_error(TransportError(f"Connection error: {exc}", code="CONNECTION_LOST"))
            return
        if not saw_terminal:
            self._dispatch_error(TransportError("Connection closed before completion", code="CONNECTION_LOST"))


def sse_opener(scheduler: Scheduler, session: Optional[requests.Session] = None, connect_timeout_s: float = 3.0):
    """Factory for driver openers: ``opener(url)(sink) -> SSETransport``."""

    shared = session or build_session()

    def open_url(url: str):
        def open_fn(sink: FrameSink) -> SSETransport:
            return SSETransport(url, sink, scheduler, session=shared, timeout=(connect_timeout_s, None)).start()

        return open_fn

    return open_url
