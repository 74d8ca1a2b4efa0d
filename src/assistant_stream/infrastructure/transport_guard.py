"""Single-flight control over the streaming connection.

At most one transport is open at any time. Frames and errors reach the
listener only while the lease that opened the transport is still current,
so nothing fires after ``cancel()``.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

from ..core.scheduler import Scheduler
from ..core.timers import CancellableTimer
from ..domain.errors import StreamError, TransportError
from ..domain.frames import Frame

_logger = logging.getLogger("assistant_stream.transport")

DEFAULT_INACTIVITY_TIMEOUT_S = 120.0


class Transport(Protocol):
    def close(self) -> None: ...


class TransportListener(Protocol):
    def on_frame(self, frame: Frame) -> None: ...

    def on_error(self, error: StreamError) -> None: ...


class FrameSink:
    """Handed to the opener; routes inbound traffic through the guard."""

    def __init__(self, guard: "TransportGuard", lease: int, listener: TransportListener) -> None:
        self._guard = guard
        self._lease = lease
        self._listener = listener

    @property
    def live(self) -> bool:
        return self._guard._lease == self._lease and self._guard._active_key is not None

    def on_frame(self, frame: Frame) -> None:
        self._guard._handle_frame(self._lease, self._listener, frame)

    def on_error(self, error: StreamError) -> None:
        self._guard._handle_error(self._lease, self._listener, error)


Opener = Callable[[FrameSink], Transport]


class TransportGuard:
    def __init__(self, scheduler: Scheduler, inactivity_timeout_s: float = DEFAULT_INACTIVITY_TIMEOUT_S) -> None:
        self._scheduler = scheduler
        self._inactivity_timeout_s = inactivity_timeout_s
        self._watchdog = CancellableTimer(scheduler, "inactivity_watchdog")
        self._active_key: Optional[str] = None
        self._transport: Optional[Transport] = None
        self._lease = 0

    @property
    def active_key(self) -> Optional[str]:
        return self._active_key

    @property
    def is_active(self) -> bool:
        return self._active_key is not None

    def start_exclusive(self, key: str, open_fn: Opener, listener: TransportListener) -> Optional[Transport]:
        if self._active_key == key:
            _logger.warning("transport_already_active", extra={"key": key})
            return None
        if self._active_key is not None:
            _logger.info("transport_superseded", extra={"previous_key": self._active_key, "key": key})
            self.cancel()

        self._lease += 1
        lease = self._lease
        self._active_key = key
        sink = FrameSink(self, lease, listener)
        try:
            transport = open_fn(sink)
        except Exception:
            if self._lease == lease:
                self._release()
            raise
        if self._lease != lease:
            # The opener delivered a terminal frame or error synchronously.
            transport.close()
            return transport
        self._transport = transport
        self._arm_watchdog(lease, listener)
        _logger.debug("transport_opened", extra={"key": key})
        return transport

    def cancel(self) -> None:
        if self._active_key is None and self._transport is None:
            self._watchdog.cancel()
            return
        _logger.debug("transport_cancelled", extra={"key": self._active_key})
        self._release()

    def _release(self) -> None:
        self._lease += 1
        self._watchdog.cancel()
        self._active_key = None
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                transport.close()
            except Exception as exc:
                _logger.debug("transport_close_failed", extra={"err": str(exc)})

    def _arm_watchdog(self, lease: int, listener: TransportListener) -> None:
        self._watchdog.start(self._inactivity_timeout_s, self._on_inactivity, lease, listener)

    def _on_inactivity(self, lease: int, listener: TransportListener) -> None:
        if lease != self._lease:
            return
        _logger.warning(
            "transport_inactivity_timeout",
            extra={"key": self._active_key, "timeout_s": self._inactivity_timeout_s},
        )
        self._release()
        listener.on_error(TransportError("Stream timeout - inactivity", code="TIMEOUT"))

    def _handle_frame(self, lease: int, listener: TransportListener, frame: Frame) -> None:
        if lease != self._lease:
            _logger.debug("transport_stale_frame_dropped", extra={"frame_type": frame.type})
            return
        if frame.is_terminal:
            self._release()
        else:
            self._arm_watchdog(lease, listener)
        listener.on_frame(frame)

    def _handle_error(self, lease: int, listener: TransportListener, error: StreamError) -> None:
        if lease != self._lease:
            _logger.debug("transport_stale_error_dropped", extra={"err": str(error)})
            return
        self._release()
        listener.on_error(error)
