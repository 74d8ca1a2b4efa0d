"""Runtime settings for the streaming client.

Every knob has a default and may be overridden through an
``ASSISTANT_STREAM_*`` environment variable. Malformed or non-positive values
fall back to the default instead of failing start-up.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

DEFAULT_BASE_URL = "http://127.0.0.1:8080"
STREAM_PATH = "/api/stream/chat"

# Seconds an unstable mode may last before the machine forces ``error``.
DEFAULT_MODE_TIMEOUTS: Dict[str, float] = {
    "thinking": 10.0,
    "streaming": 30.0,
    "collecting_info": 60.0,
    "processing": 15.0,
}


@dataclass(frozen=True)
class StreamSettings:
    base_url: str = DEFAULT_BASE_URL
    inactivity_timeout_s: float = 120.0
    health_check_interval_s: float = 5.0
    degraded_after_s: float = 30.0
    max_retries: int = 3
    retry_base_delay_s: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay_s: float = 10.0
    max_fragment_chars: int = 1000
    max_buffer_chars: int = 8000
    max_text_chars: int = 8000
    mode_history_limit: int = 100
    max_recovery_attempts: int = 3
    connect_timeout_s: float = 3.0
    mode_timeouts: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_MODE_TIMEOUTS))

    def retry_delay(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt + 1`` (0-based ``attempt``)."""
        delay = self.retry_base_delay_s * (self.retry_multiplier ** max(0, attempt))
        return min(delay, self.retry_max_delay_s)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "StreamSettings":
        source = env if env is not None else os.environ
        defaults = cls()
        timeouts = dict(DEFAULT_MODE_TIMEOUTS)
        for mode in DEFAULT_MODE_TIMEOUTS:
            name = f"ASSISTANT_STREAM_{mode.upper()}_TIMEOUT_S"
            timeouts[mode] = _env_float(source, name, timeouts[mode])
        return cls(
            base_url=(source.get("ASSISTANT_STREAM_BASE_URL") or defaults.base_url).rstrip("/"),
            inactivity_timeout_s=_env_float(source, "ASSISTANT_STREAM_INACTIVITY_TIMEOUT_S", defaults.inactivity_timeout_s),
            health_check_interval_s=_env_float(source, "ASSISTANT_STREAM_HEALTH_INTERVAL_S", defaults.health_check_interval_s),
            degraded_after_s=_env_float(source, "ASSISTANT_STREAM_DEGRADED_AFTER_S", defaults.degraded_after_s),
            max_retries=_env_int(source, "ASSISTANT_STREAM_MAX_RETRIES", defaults.max_retries),
            retry_base_delay_s=_env_float(source, "ASSISTANT_STREAM_RETRY_BASE_DELAY_S", defaults.retry_base_delay_s),
            retry_multiplier=_env_float(source, "ASSISTANT_STREAM_RETRY_MULTIPLIER", defaults.retry_multiplier),
            retry_max_delay_s=_env_float(source, "ASSISTANT_STREAM_RETRY_MAX_DELAY_S", defaults.retry_max_delay_s),
            max_fragment_chars=_env_int(source, "ASSISTANT_STREAM_MAX_FRAGMENT_CHARS", defaults.max_fragment_chars),
            max_buffer_chars=_env_int(source, "ASSISTANT_STREAM_MAX_BUFFER_CHARS", defaults.max_buffer_chars),
            max_text_chars=_env_int(source, "ASSISTANT_STREAM_MAX_TEXT_CHARS", defaults.max_text_chars),
            mode_history_limit=_env_int(source, "ASSISTANT_STREAM_MODE_HISTORY_LIMIT", defaults.mode_history_limit),
            max_recovery_attempts=_env_int(source, "ASSISTANT_STREAM_MAX_RECOVERY_ATTEMPTS", defaults.max_recovery_attempts),
            connect_timeout_s=_env_float(source, "ASSISTANT_STREAM_CONNECT_TIMEOUT_S", defaults.connect_timeout_s),
            mode_timeouts=timeouts,
        )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default
