from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional, Sequence, Tuple

from ..core.broadcast import Broadcast
from ..domain.models import PerformanceMetrics, Turn
from ..infrastructure.message_store import MessageStore, Outcome, StoreUpdate
from ..observability.metrics import STORE_RECOVERIES
from .telemetry_sink import TelemetryEvent, record_event

_logger = logging.getLogger("assistant_stream.conversation")


class Conversation:
    """Reactive holder of the current ``MessageStore`` snapshot.

    This is the only sanctioned way to touch turn content: each mutator
    applies one pure store transition, publishes the new snapshot and reports
    the ``Outcome`` so recoveries are visible to callers and tests.
    """

    def __init__(
        self,
        *,
        max_fragment_chars: int = 1000,
        max_buffer_chars: int = 8000,
        max_text_chars: int = 8000,
    ) -> None:
        initial = MessageStore(
            max_fragment_chars=max_fragment_chars,
            max_buffer_chars=max_buffer_chars,
            max_text_chars=max_text_chars,
        )
        self._store = Broadcast(initial, name="conversation")

    @property
    def store(self) -> MessageStore:
        return self._store.value

    @property
    def messages(self) -> Tuple[Turn, ...]:
        return self._store.value.messages

    @property
    def streaming_id(self) -> Optional[str]:
        return self._store.value.streaming_id

    def get(self, turn_id: str) -> Optional[Turn]:
        return self._store.value.get(turn_id)

    def buffered_text(self, turn_id: str) -> str:
        turn = self.get(turn_id)
        return turn.buffered_text if turn else ""

    def subscribe(self, listener: Callable[[MessageStore], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    def _commit(self, operation: str, update: StoreUpdate) -> Outcome:
        if update.outcome is Outcome.RECOVERED:
            _logger.warning("turn_recovered", extra={"operation": operation, "turn_id": update.turn_id})
            STORE_RECOVERIES.labels(operation=operation).inc()
            record_event(TelemetryEvent(name="conversation.turn_recovered", properties={"operation": operation}, turn_id=update.turn_id))
        if update.store is not self._store.value:
            self._store.publish(update.store)
        return update.outcome

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------
    def add_user_message(self, text: str, turn_id: Optional[str] = None) -> str:
        turn_id = turn_id or uuid.uuid4().hex
        self._commit("add_user", self._store.value.add_user(turn_id, text))
        return turn_id

    def add_ai_placeholder(self, turn_id: Optional[str] = None) -> str:
        turn_id = turn_id or uuid.uuid4().hex
        self._commit("add_placeholder", self._store.value.add_placeholder(turn_id))
        return turn_id

    def append_delta(self, turn_id: str, fragment: str) -> Outcome:
        return self._commit("append_delta", self._store.value.append_delta(turn_id, fragment))

    def finalize_message(
        self,
        turn_id: str,
        final_text: Optional[str] = None,
        performance: Optional[PerformanceMetrics] = None,
        evidence: Optional[Sequence[str]] = None,
    ) -> Outcome:
        update = self._store.value.finalize(turn_id, final_text, performance, evidence)
        return self._commit("finalize", update)

    def set_error(self, turn_id: str, message: str) -> Outcome:
        return self._commit("set_error", self._store.value.set_error(turn_id, message))

    def clear_streaming(self) -> Outcome:
        return self._commit("clear_streaming", self._store.value.clear_streaming())
