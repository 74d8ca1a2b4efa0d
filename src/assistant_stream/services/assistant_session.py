from __future__ import annotations

import logging
import os
import uuid
from typing import Dict, Optional, Tuple

import requests

from ..core.config import StreamSettings
from ..core.mode_machine import ModeStateMachine
from ..core.scheduler import AsyncioScheduler, Scheduler
from ..domain.errors import FatalError
from ..domain.models import StreamSession
from ..infrastructure.sse_transport import sse_opener
from ..infrastructure.transport_guard import TransportGuard
from .connection_driver import ConnectionDriver, OpenerFactory, StreamCallbacks, UidProvider
from .conversation import Conversation

_logger = logging.getLogger("assistant_stream.session")


def _env_uid() -> Optional[str]:
    return os.getenv("ASSISTANT_STREAM_UID") or None


class AssistantSession:
    """Wires one conversation: store, mode machine, guard and driver on one scheduler."""

    def __init__(
        self,
        settings: Optional[StreamSettings] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        opener: Optional[OpenerFactory] = None,
        uid_provider: Optional[UidProvider] = None,
        session_id: Optional[str] = None,
        http_session: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings or StreamSettings.from_env()
        self.scheduler = scheduler or AsyncioScheduler()
        self.conversation = Conversation(
            max_fragment_chars=self.settings.max_fragment_chars,
            max_buffer_chars=self.settings.max_buffer_chars,
            max_text_chars=self.settings.max_text_chars,
        )
        self.modes = ModeStateMachine(
            self.scheduler,
            mode_timeouts=self.settings.mode_timeouts,
            history_limit=self.settings.mode_history_limit,
            max_recovery_attempts=self.settings.max_recovery_attempts,
        )
        self.guard = TransportGuard(self.scheduler, self.settings.inactivity_timeout_s)
        if opener is None:
            opener = sse_opener(self.scheduler, http_session, self.settings.connect_timeout_s)
        self.stream_session = StreamSession(session_id=session_id or uuid.uuid4().hex)
        self.driver = ConnectionDriver(
            guard=self.guard,
            conversation=self.conversation,
            scheduler=self.scheduler,
            opener=opener,
            session=self.stream_session,
            uid_provider=uid_provider or _env_uid,
            modes=self.modes,
            settings=self.settings,
        )
        self._closed = False
        self._user_turns: Dict[str, str] = {}

    @property
    def closed(self) -> bool:
        return self._closed

    def send(
        self,
        prompt: str,
        callbacks: Optional[StreamCallbacks] = None,
        *,
        turn_id: Optional[str] = None,
        expand: bool = False,
    ) -> Tuple[str, str]:
        """Record the user's prompt and stream the reply; returns ``(turn_id, user_turn_id)``."""

        if self._closed:
            raise FatalError("Session is closed", code="SESSION_CLOSED")
        if not prompt or not prompt.strip():
            raise ValueError("Prompt must not be empty")
        if turn_id is not None and turn_id == self.driver.active_turn_id and turn_id in self._user_turns:
            _logger.warning("send_duplicate_ignored", extra={"turn_id": turn_id})
            return turn_id, self._user_turns[turn_id]
        user_turn_id = self.conversation.add_user_message(prompt.strip())
        turn_id = turn_id or uuid.uuid4().hex
        self._user_turns = {turn_id: user_turn_id}
        self.driver.start_stream(prompt, callbacks, turn_id=turn_id, expand=expand)
        return turn_id, user_turn_id

    def stop(self) -> None:
        self.driver.stop_stream()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.driver.close()
        self.modes.close()
        _logger.info("session_closed", extra={"session_id": self.stream_session.session_id})
