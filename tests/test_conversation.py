from prometheus_client import REGISTRY

from src.assistant_stream.infrastructure.message_store import Outcome
from src.assistant_stream.services.conversation import Conversation
from src.assistant_stream.services.telemetry_sink import list_recent_events


def test_mutations_publish_new_snapshots():
    conversation = Conversation()
    snapshots = []
    conversation.subscribe(snapshots.append)

    user_id = conversation.add_user_message("Hi")
    turn_id = conversation.add_ai_placeholder()
    conversation.append_delta(turn_id, "Hel")
    conversation.append_delta(turn_id, "lo")
    assert conversation.buffered_text(turn_id) == "Hello"
    assert conversation.streaming_id == turn_id

    conversation.finalize_message(turn_id)
    assert conversation.get(turn_id).text == "Hello"
    assert [t.id for t in conversation.messages] == [user_id, turn_id]
    assert len(snapshots) == 6
    assert len(snapshots[0]) == 0


def test_ignored_operations_do_not_publish():
    conversation = Conversation()
    turn_id = conversation.add_ai_placeholder("a1")
    conversation.finalize_message(turn_id, "done")
    snapshots = []
    conversation.subscribe(snapshots.append)

    assert conversation.finalize_message(turn_id, "again") is Outcome.IGNORED
    assert conversation.append_delta(turn_id, "late") is Outcome.IGNORED
    assert len(snapshots) == 1


def test_recovery_is_reported():
    labels = {"operation": "append_delta"}
    before = REGISTRY.get_sample_value("assistant_stream_store_recoveries_total", labels) or 0.0
    conversation = Conversation()

    assert conversation.append_delta("ghost", "text") is Outcome.RECOVERED

    assert REGISTRY.get_sample_value("assistant_stream_store_recoveries_total", labels) == before + 1
    [event] = list_recent_events(name="conversation.turn_recovered")
    assert event.turn_id == "ghost"
    assert event.properties == {"operation": "append_delta"}


def test_caps_are_configurable():
    conversation = Conversation(max_fragment_chars=3, max_buffer_chars=5, max_text_chars=5)
    turn_id = conversation.add_ai_placeholder()
    conversation.append_delta(turn_id, "abcdef")
    conversation.append_delta(turn_id, "ghi")
    assert conversation.buffered_text(turn_id) == "abcgh"
    assert conversation.get(turn_id).truncated
