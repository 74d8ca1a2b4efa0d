from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_logger = logging.getLogger("assistant_stream.telemetry")
_metric_logger = logging.getLogger("assistant_stream.metrics")


@dataclass
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    turn_id: str | None = None


# Rolling buffer of recent events for diagnostics
_RECENT_EVENTS: List[TelemetryEvent] = []
_MAX_BUFFER = 200


def record_event(event: TelemetryEvent) -> None:
    """Log a telemetry event and keep it in the in-memory buffer."""

    _RECENT_EVENTS.append(event)
    if len(_RECENT_EVENTS) > _MAX_BUFFER:
        del _RECENT_EVENTS[0 : len(_RECENT_EVENTS) - _MAX_BUFFER]

    _logger.info(
        "telemetry_event",
        extra={
            "telemetry_name": event.name,
            "telemetry_turn_id": event.turn_id,
            "telemetry_properties": event.properties,
        },
    )


def list_recent_events(limit: int = 50, name: Optional[str] = None) -> List[TelemetryEvent]:
    if limit <= 0:
        return []
    events = _RECENT_EVENTS if name is None else [e for e in _RECENT_EVENTS if e.name == name]
    return list(events[-limit:])


def clear_events() -> None:
    _RECENT_EVENTS.clear()


def record_metric(
    *,
    name: str,
    value: float,
    properties: Optional[Dict[str, Any]] = None,
    metric_type: str = "gauge",
) -> None:
    """Emit a telemetry metric.

    Parameters
    ----------
    name: str
        Metric identifier (snake_case preferred).
    value: float
        Numeric gauge/counter value.
    properties: dict[str, Any] | None
        Additional dimensions (e.g., turn_id, session_id).
    metric_type: str
        "gauge" (default), "counter", or "timing".
    """

    payload = {
        "metric_name": name,
        "metric_value": value,
        "metric_properties": dict(properties or {}),
        "metric_type": metric_type,
    }
    _metric_logger.info("metric_event", extra=payload)
