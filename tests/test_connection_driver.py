import logging
from urllib.parse import parse_qs, urlparse

from prometheus_client import REGISTRY

from src.assistant_stream.core.config import StreamSettings
from src.assistant_stream.domain.errors import ERROR_TURN_TEXT, TransportError
from src.assistant_stream.services.assistant_session import AssistantSession
from src.assistant_stream.services.connection_driver import RETRIES_EXHAUSTED_MESSAGE, StreamCallbacks


class Recorder:
    def __init__(self):
        self.deltas = []
        self.done = 0
        self.errors = []
        self.retries = []
        self.meta = []
        self.limits = []
        self.health = []

    def callbacks(self):
        return StreamCallbacks(
            on_meta=self.meta.append,
            on_delta=lambda text, buffered: self.deltas.append((text, buffered)),
            on_done=self._on_done,
            on_error=self.errors.append,
            on_retry=lambda attempt, total: self.retries.append((attempt, total)),
            on_limit=self.limits.append,
            on_connection_health=self.health.append,
        )

    def _on_done(self):
        self.done += 1


def _dropped(reason):
    return REGISTRY.get_sample_value("assistant_stream_fragments_dropped_total", {"reason": reason}) or 0.0


def _start(assistant, recorder=None, turn_id="t1", prompt="Hi there", expand=False):
    recorder = recorder or Recorder()
    assistant.driver.start_stream(prompt, recorder.callbacks(), turn_id=turn_id, expand=expand)
    return recorder


def _modes(assistant):
    return [(t.from_mode, t.to_mode) for t in assistant.modes.get_state().history]


def test_stream_url_carries_correlation(assistant, opener):
    _start(assistant, expand=True)
    url = urlparse(opener.urls[0])
    query = parse_qs(url.query)
    assert f"{url.scheme}://{url.netloc}{url.path}" == "http://stream.test/api/stream/chat"
    assert query == {
        "sessionId": ["s1"],
        "message": ["Hi there"],
        "uid": ["u1"],
        "clientMessageId": ["t1"],
        "expand": ["true"],
    }
    assert assistant.stream_session.active_transport_key == "u1:t1"


def test_duplicate_fragments_are_dropped(assistant, opener):
    before = _dropped("duplicate")
    recorder = _start(assistant)
    transport = opener.latest
    transport.emit("open")
    transport.delta("Hello", seq=1, client_message_id="t1")
    transport.delta(" world", seq=2, client_message_id="t1")
    transport.delta(" world", seq=2, client_message_id="t1")
    transport.emit("done", {})

    turn = assistant.conversation.get("t1")
    assert turn.text == "Hello world"
    assert not turn.is_streaming
    assert recorder.deltas == [("Hello", "Hello"), (" world", "Hello world")]
    assert recorder.done == 1
    assert _dropped("duplicate") == before + 1


def test_mismatched_correlation_is_dropped(assistant, opener):
    before = _dropped("correlation")
    _start(assistant)
    opener.latest.delta("other turn", seq=1, client_message_id="t0")
    opener.latest.delta("mine")
    assert assistant.conversation.buffered_text("t1") == "mine"
    assert _dropped("correlation") == before + 1


def test_mode_milestones_follow_the_stream(assistant, opener):
    _start(assistant)
    assert assistant.modes.current == "thinking"
    opener.latest.delta("a", seq=0)
    assert assistant.modes.current == "streaming"
    opener.latest.emit("done", {"full": "abc"})
    assert assistant.modes.current == "idle"
    assert _modes(assistant) == [("idle", "thinking"), ("thinking", "streaming"), ("streaming", "idle")]
    assert assistant.conversation.get("t1").text == "abc"


def test_done_without_fragments(assistant, opener):
    recorder = _start(assistant)
    opener.latest.emit("done")
    assert assistant.conversation.get("t1").text == "Response completed"
    assert assistant.modes.current == "idle"
    assert recorder.done == 1
    assert not assistant.driver.is_streaming


def test_side_channel_frames_reach_callbacks(assistant, opener):
    recorder = _start(assistant)
    opener.latest.emit("meta", {"model": "m1"})
    opener.latest.emit("limit", {"remaining": 0})
    opener.latest.emit("ping")
    assert recorder.meta == [{"model": "m1"}]
    assert recorder.limits == [{"remaining": 0}]


def test_status_tracks_connection(assistant, opener):
    _start(assistant)
    status = assistant.driver.status()
    assert status.turn_id == "t1"
    assert status.is_streaming and status.is_connecting
    opener.latest.emit("open")
    assert not assistant.driver.is_connecting
    opener.latest.emit("done")
    assert not assistant.driver.is_streaming


def test_backoff_then_terminal_error(scheduler, assistant, opener):
    recorder = _start(assistant)
    opener.latest.fail(TransportError("Network connection error", code="NETWORK_ERROR"))

    for attempt, delay in enumerate((1.0, 2.0, 4.0), start=1):
        assert assistant.driver.is_retrying
        assert assistant.driver.retry_count == attempt
        opens = len(opener.urls)
        scheduler.advance(delay - 0.5)
        assert len(opener.urls) == opens
        scheduler.advance(0.5)
        assert len(opener.urls) == opens + 1
        opener.latest.fail(TransportError("Network connection error", code="NETWORK_ERROR"))

    assert recorder.retries == [(1, 3), (2, 3), (3, 3)]
    assert recorder.errors == [RETRIES_EXHAUSTED_MESSAGE]
    assert recorder.done == 0

    turn = assistant.conversation.get("t1")
    assert turn.text == ERROR_TURN_TEXT
    assert turn.error == RETRIES_EXHAUSTED_MESSAGE
    status = assistant.driver.status()
    assert not status.is_streaming and not status.is_retrying
    assert status.connection_health == "unhealthy"
    assert assistant.modes.current == "error"

    scheduler.advance(60)
    assert len(opener.urls) == 4
    assert recorder.errors == [RETRIES_EXHAUSTED_MESSAGE]


def test_non_retryable_error_frame_fails_immediately(assistant, opener):
    recorder = _start(assistant)
    opener.latest.emit("error", {"message": "Unauthorized", "retryable": False})
    assert recorder.retries == []
    assert recorder.errors == ["Please sign in again to continue."]
    assert assistant.conversation.get("t1").error == "Please sign in again to continue."


def test_retryable_error_frame_is_retried(scheduler, assistant, opener):
    recorder = _start(assistant)
    opener.latest.emit("error", {"code": "UPSTREAM", "message": "upstream hiccup", "retryable": True})
    assert recorder.retries == [(1, 3)]
    scheduler.advance(1)
    assert len(opener.transports) == 2
    opener.latest.emit("done", {"full": "ok"})
    assert recorder.done == 1
    assert assistant.conversation.get("t1").performance.retry_count == 1


def test_inactivity_triggers_retry(scheduler, assistant, opener):
    recorder = _start(assistant)
    scheduler.advance(120)
    assert recorder.retries == [(1, 3)]
    assert assistant.driver.status().last_error == "Stream timeout - inactivity"


def test_opener_exception_is_classified(scheduler, assistant, opener):
    opener.errors.append(OSError("connection refused"))
    recorder = _start(assistant)
    assert recorder.retries == [(1, 3)]
    scheduler.advance(1)
    assert len(opener.transports) == 1


def test_missing_user_fails_without_retry(scheduler, opener):
    session = AssistantSession(StreamSettings(), scheduler=scheduler, opener=opener, uid_provider=lambda: None)
    recorder = _start(session)
    assert opener.urls == []
    assert recorder.errors == ["Please sign in again to continue."]
    assert session.modes.current == "error"
    session.close()


def test_replayed_fragments_after_retry_are_deduplicated(scheduler, assistant, opener):
    _start(assistant)
    opener.latest.delta("Hello", seq=1)
    opener.latest.fail(TransportError("connection reset"))
    scheduler.advance(1)
    opener.latest.delta("Hello", seq=1)
    opener.latest.delta(" world", seq=2)
    opener.latest.emit("done")
    assert assistant.conversation.get("t1").text == "Hello world"


def test_seq_resets_for_a_new_turn(assistant, opener):
    _start(assistant, turn_id="t1")
    opener.latest.delta("one", seq=5)
    opener.latest.emit("done")
    _start(assistant, turn_id="t2")
    opener.latest.delta("two", seq=0)
    opener.latest.emit("done")
    assert assistant.conversation.get("t2").text == "two"


def test_stop_stream_tears_everything_down(scheduler, assistant, opener):
    recorder = _start(assistant)
    transport = opener.latest
    transport.delta("Hel", seq=0)
    assistant.driver.stop_stream()
    assistant.driver.stop_stream()

    assert transport.closed
    turn = assistant.conversation.get("t1")
    assert not turn.is_streaming
    assert turn.buffered_text == "Hel"
    assert assistant.modes.current == "idle"
    assert assistant.stream_session.active_transport_key is None

    transport.emit("done", {"full": "late"})
    scheduler.advance(300)
    assert recorder.done == 0 and recorder.errors == []
    assert assistant.conversation.get("t1").text == ""


def test_stop_cancels_pending_retry(scheduler, assistant, opener):
    _start(assistant)
    opener.latest.fail(TransportError("connection reset"))
    assistant.driver.stop_stream()
    scheduler.advance(30)
    assert len(opener.urls) == 1
    assert not assistant.driver.is_retrying


def test_duplicate_start_is_ignored_and_new_turn_supersedes(assistant, opener):
    first = _start(assistant, turn_id="t1")
    _start(assistant, turn_id="t1")
    assert len(opener.transports) == 1

    old = opener.latest
    old.delta("partial", seq=0)
    _start(assistant, turn_id="t2")
    assert old.closed
    assert assistant.conversation.get("t1").text == "partial"
    assert [t.id for t in assistant.conversation.store.streaming_turns()] == ["t2"]
    old.emit("done")
    assert first.done == 0
    assert assistant.stream_session.active_transport_key == "u1:t2"


def test_callback_failures_do_not_break_the_stream(assistant, opener):
    def broken(*_args):
        raise RuntimeError("ui bug")

    callbacks = StreamCallbacks(on_delta=broken, on_done=broken)
    assistant.driver.start_stream("Hi", callbacks, turn_id="t1")
    opener.latest.delta("a")
    opener.latest.delta("b")
    opener.latest.emit("done")
    assert assistant.conversation.get("t1").text == "ab"


def test_health_degrades_without_activity(scheduler, assistant, opener):
    recorder = _start(assistant)
    opener.latest.emit("open")
    scheduler.advance(25)
    assert assistant.driver.connection_health == "healthy"
    scheduler.advance(5)
    assert assistant.driver.connection_health == "degraded"
    opener.latest.emit("ping")
    scheduler.advance(5)
    assert assistant.driver.connection_health == "healthy"
    assert recorder.health == ["degraded", "healthy"]


def test_performance_metrics(scheduler, assistant, opener):
    assert assistant.driver.get_performance_metrics() is None
    _start(assistant)
    scheduler.advance(0.5)
    opener.latest.delta("0123456789")
    scheduler.advance(1.5)
    opener.latest.emit("done")
    scheduler.advance(10)

    perf = assistant.driver.get_performance_metrics()
    assert perf.duration_ms == 2000.0
    assert perf.character_count == 10
    assert perf.characters_per_second == 5.0

    turn_perf = assistant.conversation.get("t1").performance
    assert turn_perf.total_latency_ms == 2000.0
    assert turn_perf.time_to_first_token_ms == 500.0
    assert turn_perf.retry_count == 0


def test_reconnect_after_retry_restores_health(scheduler, assistant, opener):
    recorder = _start(assistant)
    opener.latest.emit("open")
    opener.latest.fail(TransportError("connection reset"))
    assert assistant.driver.connection_health == "degraded"

    scheduler.advance(1)
    opener.latest.emit("open")
    assert not assistant.driver.is_retrying
    assert assistant.driver.connection_health == "healthy"

    for _ in range(8):
        scheduler.advance(5)
        opener.latest.emit("ping")
    assert assistant.driver.connection_health == "healthy"
    assert assistant.driver.status().retry_count == 1
    assert recorder.health[-1] == "healthy"


def test_default_uid_requires_environment(monkeypatch, scheduler, opener):
    monkeypatch.delenv("ASSISTANT_STREAM_UID", raising=False)
    session = AssistantSession(StreamSettings(), scheduler=scheduler, opener=opener, session_id="s1")
    recorder = Recorder()
    session.send("Hi there", recorder.callbacks(), turn_id="t1")
    assert opener.urls == []
    assert recorder.errors == ["Please sign in again to continue."]
    assert session.conversation.get("t1").error == "Please sign in again to continue."
    assert session.modes.current == "error"
    session.close()


def test_default_uid_reads_environment(monkeypatch, scheduler, opener):
    monkeypatch.setenv("ASSISTANT_STREAM_UID", "u42")
    session = AssistantSession(StreamSettings(), scheduler=scheduler, opener=opener, session_id="s1")
    session.send("Hi there", turn_id="t1")
    assert parse_qs(urlparse(opener.urls[0]).query)["uid"] == ["u42"]
    assert session.stream_session.active_transport_key == "u42:t1"
    session.close()


def test_completion_records_duration_metric(caplog, scheduler, assistant, opener):
    _start(assistant)
    scheduler.advance(1.5)
    opener.latest.delta("abc")
    with caplog.at_level(logging.INFO, logger="assistant_stream.metrics"):
        opener.latest.emit("done")
    [record] = [r for r in caplog.records if r.name == "assistant_stream.metrics"]
    assert record.metric_name == "stream_duration_ms"
    assert record.metric_value == 1500.0
    assert record.metric_type == "timing"
    assert record.metric_properties == {"turn_id": "t1", "chars": 3, "retries": 0}


def test_duplicate_send_keeps_a_single_user_turn(assistant, opener):
    first = assistant.send("Hi there", turn_id="t1")
    second = assistant.send("Hi there", turn_id="t1")
    assert second == first
    assert [t.role for t in assistant.conversation.messages] == ["user", "assistant"]
    assert len(opener.transports) == 1

    opener.latest.emit("done", {"full": "ok"})
    third = assistant.send("Again", turn_id="t2")
    assert third[0] == "t2" and third[1] != first[1]
    assert len(assistant.conversation.messages) == 4
