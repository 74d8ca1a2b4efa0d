"""Immutable, id-keyed store of conversation turns.

Every operation returns a ``StoreUpdate`` carrying a new store and an
``Outcome``. The previous store is never touched, so a reader holding a
snapshot never observes a half-applied change.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Mapping, NamedTuple, Optional, Sequence, Tuple

from ..domain.errors import ERROR_TURN_TEXT
from ..domain.models import PerformanceMetrics, Turn

MAX_FRAGMENT_CHARS = 1000
MAX_BUFFER_CHARS = 8000
MAX_TEXT_CHARS = 8000
TRUNCATION_NOTICE = "\n\n[Response truncated]"
EMPTY_RESPONSE_TEXT = "Response completed"
INCOMPLETE_RESPONSE_TEXT = "Response incomplete"


class Outcome(str, Enum):
    NORMAL = "normal"
    RECOVERED = "recovered"
    IGNORED = "ignored"


class StoreUpdate(NamedTuple):
    store: "MessageStore"
    outcome: Outcome
    turn_id: Optional[str] = None


@dataclass(frozen=True)
class MessageStore:
    by_id: Mapping[str, Turn] = field(default_factory=lambda: MappingProxyType({}))
    order: Tuple[str, ...] = ()
    streaming_id: Optional[str] = None
    max_fragment_chars: int = MAX_FRAGMENT_CHARS
    max_buffer_chars: int = MAX_BUFFER_CHARS
    max_text_chars: int = MAX_TEXT_CHARS

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    @property
    def messages(self) -> Tuple[Turn, ...]:
        return tuple(self.by_id[turn_id] for turn_id in self.order)

    def get(self, turn_id: str) -> Optional[Turn]:
        return self.by_id.get(turn_id)

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self.by_id

    def __len__(self) -> int:
        return len(self.order)

    def streaming_turns(self) -> Tuple[Turn, ...]:
        return tuple(turn for turn in self.messages if turn.is_streaming)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _with(self, turn: Turn, *, streaming_id: Optional[str] = None, keep_marker: bool = True) -> "MessageStore":
        by_id = dict(self.by_id)
        order = self.order
        if turn.id not in by_id:
            order = order + (turn.id,)
        by_id[turn.id] = turn
        marker = self.streaming_id if keep_marker else streaming_id
        return replace(self, by_id=MappingProxyType(by_id), order=order, streaming_id=marker)

    def _finalize_text(self, text: str, truncated: bool) -> Tuple[str, bool]:
        if len(text) > self.max_text_chars:
            text = text[: self.max_text_chars]
            truncated = True
        if truncated and not text.endswith(TRUNCATION_NOTICE):
            text = text + TRUNCATION_NOTICE
        return text, truncated

    def _settle_current(self) -> "MessageStore":
        """Finalize whatever turn is currently streaming, if any."""
        current = self.streaming_id
        if current is None or current not in self.by_id:
            return replace(self, streaming_id=None)
        return self.finalize(current).store

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def add_user(self, turn_id: str, text: str) -> StoreUpdate:
        if turn_id in self.by_id:
            return StoreUpdate(self, Outcome.IGNORED, turn_id)
        turn = Turn(id=turn_id, role="user", text=text, is_streaming=False)
        return StoreUpdate(self._with(turn), Outcome.NORMAL, turn_id)

    def add_placeholder(self, turn_id: str) -> StoreUpdate:
        if turn_id in self.by_id:
            return StoreUpdate(self, Outcome.IGNORED, turn_id)
        base = self._settle_current()
        turn = Turn(id=turn_id, role="assistant", is_streaming=True)
        return StoreUpdate(base._with(turn, streaming_id=turn_id, keep_marker=False), Outcome.NORMAL, turn_id)

    def append_delta(self, turn_id: str, fragment: str) -> StoreUpdate:
        base = self
        outcome = Outcome.NORMAL
        turn = self.by_id.get(turn_id)
        if turn is None:
            base = self.add_placeholder(turn_id).store
            turn = base.by_id[turn_id]
            outcome = Outcome.RECOVERED
        if not turn.is_streaming or turn.role != "assistant" or turn.truncated:
            return StoreUpdate(base, outcome if outcome is Outcome.RECOVERED else Outcome.IGNORED, turn_id)

        piece = fragment[: self.max_fragment_chars]
        room = self.max_buffer_chars - len(turn.buffered_text)
        truncated = len(piece) > room
        if truncated:
            piece = piece[: max(room, 0)]
        buffered = turn.buffered_text + piece
        updated = turn.model_copy(update={"buffered_text": buffered, "truncated": truncated})
        return StoreUpdate(base._with(updated), outcome, turn_id)

    def finalize(
        self,
        turn_id: str,
        final_text: Optional[str] = None,
        performance: Optional[PerformanceMetrics] = None,
        evidence: Optional[Sequence[str]] = None,
    ) -> StoreUpdate:
        turn = self.by_id.get(turn_id)
        outcome = Outcome.NORMAL
        fallback_text = EMPTY_RESPONSE_TEXT
        if turn is None:
            streaming = self.by_id.get(self.streaming_id) if self.streaming_id else None
            if streaming is None or not streaming.is_streaming:
                return StoreUpdate(self, Outcome.IGNORED, None)
            turn = streaming
            outcome = Outcome.RECOVERED
            fallback_text = INCOMPLETE_RESPONSE_TEXT
        if not turn.is_streaming:
            return StoreUpdate(self, Outcome.IGNORED, turn.id)

        # A server-supplied final text replaces the buffer, so only its own length can truncate it.
        text = final_text or turn.buffered_text or turn.text or fallback_text
        text, truncated = self._finalize_text(text, turn.truncated and not final_text)
        updates = {
            "text": text,
            "buffered_text": "",
            "is_streaming": False,
            "truncated": truncated,
        }
        if performance is not None:
            updates["performance"] = performance
        if evidence is not None:
            updates["evidence"] = tuple(evidence)
        finalized = turn.model_copy(update=updates)
        marker = None if self.streaming_id == turn.id else self.streaming_id
        return StoreUpdate(self._with(finalized, streaming_id=marker, keep_marker=False), outcome, turn.id)

    def set_error(self, turn_id: str, message: str) -> StoreUpdate:
        turn = self.by_id.get(turn_id)
        marker = None if self.streaming_id == turn_id else self.streaming_id
        if turn is None or not turn.is_streaming:
            if marker == self.streaming_id:
                return StoreUpdate(self, Outcome.IGNORED, turn_id)
            return StoreUpdate(replace(self, streaming_id=marker), Outcome.IGNORED, turn_id)
        failed = turn.model_copy(
            update={"text": ERROR_TURN_TEXT, "buffered_text": "", "is_streaming": False, "error": message}
        )
        return StoreUpdate(self._with(failed, streaming_id=marker, keep_marker=False), Outcome.NORMAL, turn_id)

    def clear_streaming(self) -> StoreUpdate:
        current = self.streaming_id
        if current is None:
            return StoreUpdate(self, Outcome.IGNORED, None)
        turn = self.by_id.get(current)
        if turn is None or not turn.is_streaming:
            return StoreUpdate(replace(self, streaming_id=None), Outcome.NORMAL, current)
        unmarked = turn.model_copy(update={"is_streaming": False})
        return StoreUpdate(self._with(unmarked, streaming_id=None, keep_marker=False), Outcome.NORMAL, current)
