from __future__ import annotations

import json
import logging
from collections import Counter
from typing import Callable, Dict, List, Optional, Tuple

from ..domain.models import Mode, ModeAnalytics, ModeHealth, ModeState, ModeStats, Transition
from ..observability.metrics import MODE_TRANSITIONS
from .broadcast import Broadcast
from .config import DEFAULT_MODE_TIMEOUTS
from .scheduler import Scheduler
from .timers import CancellableTimer

_logger = logging.getLogger("assistant_stream.mode")

MODES: Tuple[str, ...] = ("idle", "thinking", "streaming", "collecting_info", "processing", "error", "fallback")
STABLE_MODES = frozenset({"idle", "error", "fallback"})

MODE_TRANSITIONS_TABLE: Dict[str, List[str]] = {
    "idle": ["thinking", "collecting_info", "error"],
    "thinking": ["streaming", "collecting_info", "error"],
    "streaming": ["idle", "error"],
    "collecting_info": ["processing", "idle", "error"],
    "processing": ["streaming", "idle", "error"],
    "error": ["idle", "fallback"],
    "fallback": ["idle", "error"],
}

ERROR_RECOVERY_THRESHOLD = 3
MAX_STUCK_SECONDS = 5 * 60


def is_valid_transition(current: str, target: str) -> bool:
    return target in MODE_TRANSITIONS_TABLE.get(current, [])


class ModeStateMachine:
    """Lifecycle FSM of an assistant session.

    State is an immutable ``ModeState`` snapshot replaced on every accepted
    transition. Unstable modes arm an auto-timeout that drives the machine to
    ``error``; three consecutive errors force a reset to ``idle``.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        mode_timeouts: Optional[Dict[str, float]] = None,
        history_limit: int = 100,
        max_recovery_attempts: int = 3,
    ) -> None:
        self._scheduler = scheduler
        self._timeouts = dict(DEFAULT_MODE_TIMEOUTS if mode_timeouts is None else mode_timeouts)
        self._history_limit = max(1, history_limit)
        self._max_recovery_attempts = max_recovery_attempts
        self._recovery_attempts = 0
        self._timeout_timer = CancellableTimer(scheduler, "mode_timeout")
        self._state = Broadcast(ModeState(last_transition_at=scheduler.now()), name="mode_state")

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def subscribe(self, listener: Callable[[ModeState], None]) -> Callable[[], None]:
        return self._state.subscribe(listener)

    def get_state(self) -> ModeState:
        return self._state.value

    @property
    def current(self) -> Mode:
        return self._state.value.current

    @property
    def recovery_attempts(self) -> int:
        return self._recovery_attempts

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def transition_to(self, next_mode: str, reason: Optional[str] = None) -> bool:
        state = self._state.value
        if next_mode == state.current:
            return True
        if not is_valid_transition(state.current, next_mode):
            _logger.warning(
                "mode_transition_rejected",
                extra={"from_mode": state.current, "to_mode": next_mode, "reason": reason},
            )
            return False

        if next_mode == "error":
            consecutive = state.consecutive_errors + 1
        elif next_mode == "fallback":
            consecutive = state.consecutive_errors
        else:
            consecutive = 0
        self._apply(next_mode, reason, consecutive)

        if self._state.value.consecutive_errors >= ERROR_RECOVERY_THRESHOLD:
            self._recover()
        return True

    def _apply(self, next_mode: str, reason: Optional[str], consecutive_errors: int) -> None:
        state = self._state.value
        now = self._scheduler.now()
        transition = Transition(
            from_mode=state.current,
            to_mode=next_mode,
            timestamp=now,
            reason=reason,
            duration_in_prior_state=max(0.0, now - state.last_transition_at),
        )
        history = (state.history + (transition,))[-self._history_limit :]
        self._timeout_timer.cancel()
        new_state = ModeState(
            current=next_mode,
            is_stable=next_mode in STABLE_MODES,
            history=history,
            consecutive_errors=consecutive_errors,
            last_transition_at=now,
        )
        _logger.info(
            "mode_transition",
            extra={
                "from_mode": state.current,
                "to_mode": next_mode,
                "reason": reason,
                "duration_s": round(transition.duration_in_prior_state, 3),
            },
        )
        MODE_TRANSITIONS.labels(from_mode=state.current, to_mode=next_mode).inc()
        self._state.publish(new_state)
        if not new_state.is_stable:
            self._schedule_timeout(next_mode)

    def _schedule_timeout(self, mode: str) -> None:
        timeout = self._timeouts.get(mode)
        if timeout:
            self._timeout_timer.start(timeout, self._on_timeout, mode)

    def _on_timeout(self, mode: str) -> None:
        if self._state.value.current != mode:
            return
        _logger.warning("mode_timeout", extra={"mode": mode})
        self.transition_to("error", "timeout")

    def _recover(self) -> None:
        if self._recovery_attempts >= self._max_recovery_attempts:
            _logger.error(
                "mode_recovery_limit_reached",
                extra={"recovery_attempts": self._recovery_attempts},
            )
        else:
            self._recovery_attempts += 1
            _logger.warning("mode_recovery", extra={"recovery_attempts": self._recovery_attempts})
        self._force_idle("auto_recovery")

    def _force_idle(self, reason: str) -> None:
        if self._state.value.current == "idle":
            self._timeout_timer.cancel()
            state = self._state.value
            if state.consecutive_errors:
                self._state.publish(state.model_copy(update={"consecutive_errors": 0}))
            return
        self._apply("idle", reason, 0)

    def reset(self, reason: str = "reset") -> None:
        """Return to ``idle`` from any mode and clear the recovery counter."""
        self._force_idle(reason)
        self._recovery_attempts = 0

    def force_recovery(self) -> None:
        _logger.warning("mode_force_recovery_requested")
        self._recover()

    def clear_history(self) -> None:
        self._state.publish(self._state.value.model_copy(update={"history": ()}))

    def close(self) -> None:
        self._timeout_timer.cancel()

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------
    def get_stats(self) -> ModeStats:
        state = self._state.value
        counts = Counter(t.to_mode for t in state.history)
        most_common = "idle"
        for mode, count in counts.items():
            if count > counts.get(most_common, 0):
                most_common = mode
        return ModeStats(
            total_transitions=len(state.history),
            time_in_current_mode=max(0.0, self._scheduler.now() - state.last_transition_at),
            most_common_mode=most_common,
            error_count=counts.get("error", 0),
            consecutive_errors=state.consecutive_errors,
            recovery_attempts=self._recovery_attempts,
        )

    def get_analytics(self) -> ModeAnalytics:
        state = self._state.value
        total_time: Dict[str, float] = {mode: 0.0 for mode in MODES}
        durations: Dict[str, List[float]] = {mode: [] for mode in MODES}
        frequency: Dict[str, int] = {mode: 0 for mode in MODES}
        for transition in state.history:
            total_time[transition.from_mode] += transition.duration_in_prior_state
            durations[transition.from_mode].append(transition.duration_in_prior_state)
            frequency[transition.to_mode] += 1
        total_time[state.current] += max(0.0, self._scheduler.now() - state.last_transition_at)

        averages = {mode: (sum(values) / len(values) if values else 0.0) for mode, values in durations.items()}
        total = len(state.history)
        return ModeAnalytics(
            total_time_in_mode=total_time,
            average_mode_duration=averages,
            transition_frequency=frequency,
            error_rate=(frequency["error"] / total) if total else 0.0,
            recovery_count=self._recovery_attempts,
        )

    def is_healthy(self) -> bool:
        return self.get_health_status().is_healthy

    def get_health_status(self) -> ModeHealth:
        state = self._state.value
        issues: List[str] = []
        recommendations: List[str] = []
        if state.consecutive_errors >= ERROR_RECOVERY_THRESHOLD:
            issues.append("High consecutive error count")
            recommendations.append("Consider resetting the service")
        if self._scheduler.now() - state.last_transition_at > MAX_STUCK_SECONDS and state.current != "idle":
            issues.append("Stuck in current mode for too long")
            recommendations.append("Force recovery or reset")
        if self._recovery_attempts >= self._max_recovery_attempts:
            issues.append("Max recovery attempts reached")
            recommendations.append("Service needs manual intervention")
        return ModeHealth(is_healthy=not issues, issues=issues, recommendations=recommendations)

    def export_state(self) -> str:
        return json.dumps(
            {
                "state": self._state.value.model_dump(mode="json"),
                "recovery_attempts": self._recovery_attempts,
                "analytics": self.get_analytics().model_dump(),
                "health": self.get_health_status().model_dump(),
            },
            indent=2,
        )
