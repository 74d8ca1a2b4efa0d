from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

from ..core.broadcast import Broadcast
from ..core.config import STREAM_PATH, StreamSettings
from ..core.mode_machine import ModeStateMachine
from ..core.scheduler import Scheduler
from ..core.timers import CancellableTimer, RepeatingTimer
from ..domain.errors import (
    FatalError,
    ProtocolError,
    StreamError,
    TransportError,
    classify_error,
    is_retryable,
)
from ..domain.frames import DonePayload, ErrorPayload, Frame
from ..domain.models import ConnectionHealth, PerformanceMetrics, StreamPerformance, StreamSession, StreamStatus
from ..infrastructure.events import publish_event
from ..infrastructure.transport_guard import Opener, TransportGuard
from ..observability.metrics import (
    FRAGMENTS_DROPPED,
    FRAMES_RECEIVED,
    STREAM_DURATION,
    STREAM_OUTCOMES,
    STREAM_RETRIES,
)
from .conversation import Conversation
from .telemetry_sink import TelemetryEvent, record_event, record_metric

_logger = logging.getLogger("assistant_stream.driver")

RETRIES_EXHAUSTED_MESSAGE = "Connection failed after retries"

# Valid paths through the mode table for the milestones the driver reports.
_MODE_PATHS: Dict[Tuple[str, str], Tuple[str, ...]] = {
    ("error", "thinking"): ("idle", "thinking"),
    ("fallback", "thinking"): ("idle", "thinking"),
    ("streaming", "thinking"): ("idle", "thinking"),
    ("collecting_info", "thinking"): ("idle", "thinking"),
    ("processing", "thinking"): ("idle", "thinking"),
    ("idle", "streaming"): ("thinking", "streaming"),
    ("error", "streaming"): ("idle", "thinking", "streaming"),
    ("thinking", "idle"): ("streaming", "idle"),
}

UidProvider = Callable[[], Optional[str]]
OpenerFactory = Callable[[str], Opener]


@dataclass
class StreamCallbacks:
    on_meta: Optional[Callable[[Any], None]] = None
    on_delta: Optional[Callable[[str, str], None]] = None
    on_done: Optional[Callable[[], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    on_retry: Optional[Callable[[int, int], None]] = None
    on_limit: Optional[Callable[[Any], None]] = None
    on_connection_health: Optional[Callable[[ConnectionHealth], None]] = None


@dataclass
class _Attempt:
    turn_id: str
    prompt: str
    callbacks: StreamCallbacks
    expand: bool
    started_at: float
    first_fragment_at: Optional[float] = None
    ended_at: Optional[float] = None
    characters: int = 0
    finished: bool = False


class _AttemptListener:
    def __init__(self, driver: "ConnectionDriver", attempt: _Attempt) -> None:
        self._driver = driver
        self._attempt = attempt

    def on_frame(self, frame: Frame) -> None:
        self._driver._on_frame(self._attempt, frame)

    def on_error(self, error: StreamError) -> None:
        self._driver._handle_failure(self._attempt, error)


def build_stream_url(
    base_url: str,
    *,
    session_id: str,
    message: str,
    uid: str,
    client_message_id: str,
    expand: bool = False,
) -> str:
    params = {
        "sessionId": session_id,
        "message": message.strip(),
        "uid": uid,
        "clientMessageId": client_message_id,
    }
    if expand:
        params["expand"] = "true"
    return f"{base_url.rstrip('/')}{STREAM_PATH}?{urlencode(params)}"


def _invoke(callback: Optional[Callable[..., None]], *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        _logger.exception("stream_callback_failed")


class ConnectionDriver:
    """Drives one streamed reply at a time on top of the transport guard.

    Fragments pass an ordering/dedup filter before reaching the
    conversation; retryable failures are retried with exponential backoff
    and everything else finalizes the turn as an error.
    """

    def __init__(
        self,
        *,
        guard: TransportGuard,
        conversation: Conversation,
        scheduler: Scheduler,
        opener: OpenerFactory,
        session: StreamSession,
        uid_provider: UidProvider,
        modes: Optional[ModeStateMachine] = None,
        settings: Optional[StreamSettings] = None,
    ) -> None:
        self._guard = guard
        self._conversation = conversation
        self._scheduler = scheduler
        self._opener = opener
        self._session = session
        self._uid_provider = uid_provider
        self._modes = modes
        self._settings = settings or StreamSettings()
        self._retry_timer = CancellableTimer(scheduler, "stream_retry")
        self._health_timer = RepeatingTimer(scheduler, "stream_health")
        self._attempt: Optional[_Attempt] = None
        self._last_activity: Optional[float] = None
        self._status = Broadcast(StreamStatus(max_retries=self._settings.max_retries), name="stream_status")

    # ------------------------------------------------------------------
    # Reactive state
    # ------------------------------------------------------------------
    @property
    def session(self) -> StreamSession:
        return self._session

    def status(self) -> StreamStatus:
        return self._status.value

    def subscribe_status(self, listener: Callable[[StreamStatus], None]) -> Callable[[], None]:
        return self._status.subscribe(listener)

    @property
    def is_streaming(self) -> bool:
        return self._status.value.is_streaming

    @property
    def is_connecting(self) -> bool:
        return self._status.value.is_connecting

    @property
    def is_retrying(self) -> bool:
        return self._status.value.is_retrying

    @property
    def retry_count(self) -> int:
        return self._status.value.retry_count

    @property
    def connection_health(self) -> ConnectionHealth:
        return self._status.value.connection_health

    @property
    def active_turn_id(self) -> Optional[str]:
        attempt = self._attempt
        if attempt is None or attempt.finished:
            return None
        return attempt.turn_id

    def _update(self, **changes: Any) -> None:
        self._status.publish(self._status.value.model_copy(update=changes))

    def get_performance_metrics(self) -> Optional[StreamPerformance]:
        attempt = self._attempt
        if attempt is None:
            return None
        end = attempt.ended_at if attempt.ended_at is not None else self._scheduler.now()
        duration_ms = max(0.0, end - attempt.started_at) * 1000.0
        rate = (attempt.characters / duration_ms) * 1000.0 if duration_ms > 0 else 0.0
        return StreamPerformance(
            duration_ms=duration_ms,
            character_count=attempt.characters,
            characters_per_second=rate,
            retry_count=self.retry_count,
            connection_health=self.connection_health,
        )

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    def start_stream(
        self,
        prompt: str,
        callbacks: Optional[StreamCallbacks] = None,
        *,
        turn_id: Optional[str] = None,
        expand: bool = False,
    ) -> None:
        callbacks = callbacks or StreamCallbacks()
        turn_id = turn_id or uuid.uuid4().hex
        current = self._attempt
        if current is not None and not current.finished:
            if current.turn_id == turn_id:
                _logger.warning("stream_duplicate_ignored", extra={"turn_id": turn_id})
                return
            self._supersede(current)

        now = self._scheduler.now()
        attempt = _Attempt(turn_id=turn_id, prompt=prompt, callbacks=callbacks, expand=expand, started_at=now)
        self._attempt = attempt
        if self._conversation.get(turn_id) is None:
            self._conversation.add_ai_placeholder(turn_id)
        if self._session.last_turn_id != turn_id:
            self._session.last_turn_id = turn_id
            self._session.last_seq = -1
        self._last_activity = now
        self._session.last_activity_at = now
        self._update(
            turn_id=turn_id,
            is_streaming=True,
            is_connecting=True,
            is_retrying=False,
            retry_count=0,
            last_error=None,
            connection_health="healthy",
        )
        _logger.info("stream_started", extra={"turn_id": turn_id, "prompt_chars": len(prompt)})
        publish_event("stream.started", {"session_id": self._session.session_id, "turn_id": turn_id})
        self._advance_mode("thinking", "stream_start")
        self._health_timer.start(self._settings.health_check_interval_s, self._check_health, attempt)
        self._open(attempt)

    def stop_stream(self) -> None:
        attempt = self._attempt
        active = attempt is not None and not attempt.finished
        self._teardown()
        if active:
            attempt.finished = True
            attempt.ended_at = self._scheduler.now()
            self._conversation.clear_streaming()
            STREAM_OUTCOMES.labels(outcome="cancelled").inc()
            _logger.info("stream_stopped", extra={"turn_id": attempt.turn_id})
            if self._modes is not None and self._modes.current != "idle":
                self._modes.reset("stream_stopped")
        if self._status.value.is_streaming or self._status.value.is_connecting or self._status.value.is_retrying:
            self._update(is_streaming=False, is_connecting=False, is_retrying=False)

    def close(self) -> None:
        self.stop_stream()

    # ------------------------------------------------------------------
    # Attempt lifecycle
    # ------------------------------------------------------------------
    def _is_current(self, attempt: _Attempt) -> bool:
        return attempt is self._attempt and not attempt.finished

    def _open(self, attempt: _Attempt) -> None:
        try:
            uid = self._uid_provider()
            if not uid:
                raise FatalError("No authenticated user found", code="UNAUTHORIZED")
            url = build_stream_url(
                self._settings.base_url,
                session_id=self._session.session_id,
                message=attempt.prompt,
                uid=uid,
                client_message_id=attempt.turn_id,
                expand=attempt.expand,
            )
            key = f"{uid}:{attempt.turn_id}"
            transport = self._guard.start_exclusive(key, self._opener(url), _AttemptListener(self, attempt))
        except StreamError as exc:
            self._handle_failure(attempt, exc)
            return
        except Exception as exc:
            _logger.warning("stream_open_failed", extra={"turn_id": attempt.turn_id, "err": str(exc)})
            self._handle_failure(attempt, StreamError(str(exc) or type(exc).__name__))
            return
        if transport is None:
            _logger.warning("stream_transport_in_use", extra={"turn_id": attempt.turn_id})
            return
        if self._is_current(attempt) and self._guard.active_key == key:
            self._session.active_transport_key = key

    def _teardown(self) -> None:
        self._retry_timer.cancel()
        self._health_timer.cancel()
        self._guard.cancel()
        self._session.active_transport_key = None

    def _supersede(self, attempt: _Attempt) -> None:
        _logger.info("stream_superseded", extra={"turn_id": attempt.turn_id})
        self._teardown()
        attempt.finished = True
        attempt.ended_at = self._scheduler.now()
        self._conversation.finalize_message(attempt.turn_id)
        STREAM_OUTCOMES.labels(outcome="superseded").inc()

    def _advance_mode(self, target: str, reason: str) -> None:
        if self._modes is None:
            return
        current = self._modes.current
        if current == target:
            return
        for step in _MODE_PATHS.get((current, target), (target,)):
            if not self._modes.transition_to(step, reason):
                break

    # ------------------------------------------------------------------
    # Inbound traffic
    # ------------------------------------------------------------------
    def _on_frame(self, attempt: _Attempt, frame: Frame) -> None:
        if not self._is_current(attempt):
            return
        now = self._scheduler.now()
        self._last_activity = now
        self._session.last_activity_at = now
        FRAMES_RECEIVED.labels(type=frame.type).inc()
        if self.is_retrying:
            # Any frame on the reconnected attempt ends the retry episode.
            self._update(is_retrying=False, connection_health="healthy")
            _invoke(attempt.callbacks.on_connection_health, "healthy")

        if frame.type == "open":
            self._update(is_connecting=False)
        elif frame.type == "meta":
            _invoke(attempt.callbacks.on_meta, frame.data)
        elif frame.type == "limit":
            _logger.info("stream_limit_signal", extra={"turn_id": attempt.turn_id})
            _invoke(attempt.callbacks.on_limit, frame.data)
        elif frame.type == "delta":
            self._on_delta(attempt, frame)
        elif frame.type == "done":
            self._on_done(attempt, frame)
        elif frame.type == "error":
            self._on_error_frame(attempt, frame)

    def _drop(self, attempt: _Attempt, reason: str, error: ProtocolError) -> None:
        FRAGMENTS_DROPPED.labels(reason=reason).inc()
        _logger.warning(
            "stream_fragment_dropped",
            extra={"turn_id": attempt.turn_id, "reason": reason, "err": error.message},
        )

    def _on_delta(self, attempt: _Attempt, frame: Frame) -> None:
        try:
            payload = frame.delta()
        except ValueError as exc:
            self._drop(attempt, "malformed", ProtocolError(str(exc)))
            return
        if payload.client_message_id is not None and payload.client_message_id != attempt.turn_id:
            self._drop(
                attempt,
                "correlation",
                ProtocolError(f"Fragment for {payload.client_message_id} while streaming {attempt.turn_id}"),
            )
            return
        if payload.seq is not None:
            if payload.seq <= self._session.last_seq:
                self._drop(
                    attempt,
                    "duplicate",
                    ProtocolError(f"seq {payload.seq} <= last seq {self._session.last_seq}"),
                )
                return
            self._session.last_seq = payload.seq
        if not payload.text:
            return

        if attempt.first_fragment_at is None:
            attempt.first_fragment_at = self._scheduler.now()
            self._advance_mode("streaming", "first_fragment")
        if self.is_connecting or self.is_retrying:
            self._update(is_connecting=False, is_retrying=False)
        self._conversation.append_delta(attempt.turn_id, payload.text)
        attempt.characters += len(payload.text)
        _invoke(attempt.callbacks.on_delta, payload.text, self._conversation.buffered_text(attempt.turn_id))

    def _on_done(self, attempt: _Attempt, frame: Frame) -> None:
        payload = frame.data if isinstance(frame.data, DonePayload) else DonePayload()
        now = self._scheduler.now()
        attempt.finished = True
        attempt.ended_at = now
        self._teardown()

        duration_ms = (now - attempt.started_at) * 1000.0
        first = attempt.first_fragment_at
        buffered = self._conversation.buffered_text(attempt.turn_id)
        performance = PerformanceMetrics(
            total_latency_ms=duration_ms,
            time_to_first_token_ms=((first - attempt.started_at) * 1000.0) if first is not None else duration_ms,
            model_used="streaming",
            tokens_used=len(payload.full or buffered or ""),
            retry_count=self.retry_count,
        )
        self._conversation.finalize_message(attempt.turn_id, payload.full or None, performance)
        self._update(is_streaming=False, is_connecting=False, is_retrying=False)
        self._advance_mode("idle", "stream_complete")

        STREAM_OUTCOMES.labels(outcome="completed").inc()
        STREAM_DURATION.observe(duration_ms / 1000.0)
        record_metric(
            name="stream_duration_ms",
            value=round(duration_ms, 1),
            properties={"turn_id": attempt.turn_id, "chars": attempt.characters, "retries": self.retry_count},
            metric_type="timing",
        )
        _logger.info(
            "stream_completed",
            extra={"turn_id": attempt.turn_id, "duration_ms": round(duration_ms), "chars": attempt.characters},
        )
        publish_event(
            "stream.completed",
            {"session_id": self._session.session_id, "turn_id": attempt.turn_id, "duration_ms": duration_ms},
        )
        _invoke(attempt.callbacks.on_done)

    def _on_error_frame(self, attempt: _Attempt, frame: Frame) -> None:
        payload = frame.data if isinstance(frame.data, ErrorPayload) else ErrorPayload()
        message = payload.message or "Stream error"
        if payload.retryable:
            error: StreamError = TransportError(message, code=payload.code)
        else:
            error = StreamError(message, code=payload.code)
        self._handle_failure(attempt, error)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------
    def _handle_failure(self, attempt: _Attempt, error: StreamError) -> None:
        if not self._is_current(attempt):
            return
        retries = self.retry_count
        if is_retryable(error) and retries < self._settings.max_retries:
            delay = self._settings.retry_delay(retries)
            attempt_no = retries + 1
            self._guard.cancel()
            self._session.active_transport_key = None
            self._update(
                is_retrying=True,
                is_connecting=False,
                retry_count=attempt_no,
                last_error=error.message,
                connection_health="degraded",
            )
            STREAM_RETRIES.inc()
            _logger.warning(
                "stream_retry_scheduled",
                extra={
                    "turn_id": attempt.turn_id,
                    "attempt": attempt_no,
                    "max_retries": self._settings.max_retries,
                    "delay_s": delay,
                    "err": error.message,
                },
            )
            publish_event("stream.retry", {"turn_id": attempt.turn_id, "attempt": attempt_no, "delay_s": delay})
            self._retry_timer.start(delay, self._retry, attempt)
            _invoke(attempt.callbacks.on_retry, attempt_no, self._settings.max_retries)
            return
        self._fail(attempt, error, exhausted=is_retryable(error))

    def _retry(self, attempt: _Attempt) -> None:
        if not self._is_current(attempt):
            return
        _logger.info("stream_retrying", extra={"turn_id": attempt.turn_id, "attempt": self.retry_count})
        self._update(is_connecting=True)
        self._open(attempt)

    def _fail(self, attempt: _Attempt, error: StreamError, *, exhausted: bool) -> None:
        attempt.finished = True
        attempt.ended_at = self._scheduler.now()
        self._teardown()
        category = classify_error(error)
        message = RETRIES_EXHAUSTED_MESSAGE if exhausted else category.message
        self._conversation.set_error(attempt.turn_id, message)
        self._update(
            is_streaming=False,
            is_connecting=False,
            is_retrying=False,
            last_error=error.message,
            connection_health="unhealthy",
        )
        self._advance_mode("error", category.type)

        STREAM_OUTCOMES.labels(outcome="failed").inc()
        _logger.error(
            "stream_failed",
            extra={
                "turn_id": attempt.turn_id,
                "category": category.type,
                "retry_count": self.retry_count,
                "err": error.message,
            },
        )
        record_event(
            TelemetryEvent(
                name="stream.failed",
                properties={"category": category.type, "retry_count": self.retry_count, "exhausted": exhausted},
                turn_id=attempt.turn_id,
            )
        )
        publish_event("stream.failed", {"turn_id": attempt.turn_id, "category": category.type})
        _invoke(attempt.callbacks.on_error, message)

    def _check_health(self, attempt: _Attempt) -> None:
        if not self._is_current(attempt) or self.is_retrying:
            return
        last = self._last_activity if self._last_activity is not None else attempt.started_at
        idle_for = self._scheduler.now() - last
        health: ConnectionHealth = "healthy" if idle_for < self._settings.degraded_after_s else "degraded"
        if health != self.connection_health:
            _logger.info("stream_health_changed", extra={"turn_id": attempt.turn_id, "health": health})
            self._update(connection_health=health)
            _invoke(attempt.callbacks.on_connection_health, health)
