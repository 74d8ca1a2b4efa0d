from __future__ import annotations

from datetime import UTC, datetime
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant"]
Mode = Literal["idle", "thinking", "streaming", "collecting_info", "processing", "error", "fallback"]
ConnectionHealth = Literal["healthy", "degraded", "unhealthy"]


def utc_now() -> datetime:
    return datetime.now(UTC)


class PerformanceMetrics(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    total_latency_ms: float
    time_to_first_token_ms: Optional[float] = None
    cache_hit: bool = False
    model_used: Optional[str] = None
    tokens_used: Optional[int] = None
    retry_count: int = 0


class Turn(BaseModel):
    """One user or assistant message in the conversation."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    text: str = ""
    buffered_text: str = ""
    is_streaming: bool = False
    timestamp: datetime = Field(default_factory=utc_now)
    performance: Optional[PerformanceMetrics] = None
    evidence: Optional[Tuple[str, ...]] = None
    truncated: bool = False
    error: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return not self.is_streaming


class StreamSession(BaseModel):
    session_id: str
    active_transport_key: Optional[str] = None
    last_turn_id: Optional[str] = None
    last_seq: int = -1
    last_activity_at: Optional[float] = None


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_mode: Mode = Field(alias="from")
    to_mode: Mode = Field(alias="to")
    timestamp: float
    reason: Optional[str] = None
    duration_in_prior_state: float = 0.0


class ModeState(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: Mode = "idle"
    is_stable: bool = True
    history: Tuple[Transition, ...] = ()
    consecutive_errors: int = 0
    last_transition_at: float = 0.0


class ModeStats(BaseModel):
    total_transitions: int
    time_in_current_mode: float
    most_common_mode: Mode
    error_count: int
    consecutive_errors: int
    recovery_attempts: int


class ModeAnalytics(BaseModel):
    total_time_in_mode: Dict[str, float]
    average_mode_duration: Dict[str, float]
    transition_frequency: Dict[str, int]
    error_rate: float
    recovery_count: int


class ModeHealth(BaseModel):
    is_healthy: bool
    issues: List[str] = []
    recommendations: List[str] = []


class StreamStatus(BaseModel):
    turn_id: Optional[str] = None
    is_streaming: bool = False
    is_connecting: bool = False
    is_retrying: bool = False
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    connection_health: ConnectionHealth = "healthy"


class StreamPerformance(BaseModel):
    duration_ms: float
    character_count: int
    characters_per_second: float
    retry_count: int
    connection_health: ConnectionHealth
