"""Typed frames of the server-push protocol and the SSE line decoder."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ProtocolError

FrameType = Literal["open", "meta", "delta", "limit", "done", "error", "ping"]
FRAME_TYPES: Tuple[str, ...] = ("open", "meta", "delta", "limit", "done", "error", "ping")
TERMINAL_FRAMES = frozenset({"done", "error"})


class DeltaPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    text: str = ""
    seq: Optional[int] = None
    client_message_id: Optional[str] = Field(default=None, alias="clientMessageId")


class DonePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full: Optional[str] = None


class ErrorPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[str] = None
    message: Optional[str] = None
    retryable: Optional[bool] = None


@dataclass(frozen=True)
class Frame:
    type: FrameType
    data: Any = None
    raw: Optional[str] = field(default=None, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_FRAMES

    def delta(self) -> DeltaPayload:
        if isinstance(self.data, DeltaPayload):
            return self.data
        return DeltaPayload.model_validate(self.data or {})


def iter_sse_events(lines: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """Group raw SSE lines into ``(event, data)`` pairs.

    Comment lines (``:``) are skipped; multi-line ``data`` fields are joined
    with newlines; a blank line dispatches the pending event.
    """

    event_name = "message"
    data_lines = []
    for raw_line in lines:
        line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
        line = line.rstrip("\r")
        if not line:
            if data_lines or event_name != "message":
                yield event_name, "\n".join(data_lines)
            event_name = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip() or "message"
        elif name == "data":
            data_lines.append(value)
    if data_lines or event_name != "message":
        yield event_name, "\n".join(data_lines)


def decode_frame(event: str, data: str) -> Frame:
    """Turn one SSE event into a typed frame; raises ``ProtocolError`` when malformed."""

    if event not in FRAME_TYPES:
        raise ProtocolError(f"Unknown frame type: {event}", code="unknown_frame")
    if event in ("open", "ping"):
        return Frame(type=event, raw=data)  # type: ignore[arg-type]

    parsed: Any = None
    if data.strip():
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as exc:
            if event in ("meta", "limit", "error"):
                # Side-channel frames tolerate plain-text payloads.
                parsed = {"raw": data}
            else:
                raise ProtocolError(f"Malformed {event} payload", code="malformed_frame") from exc

    try:
        if event == "delta":
            if not isinstance(parsed, dict):
                raise ProtocolError("Delta payload must be an object", code="malformed_frame")
            return Frame(type="delta", data=DeltaPayload.model_validate(parsed), raw=data)
        if event == "done":
            return Frame(type="done", data=DonePayload.model_validate(parsed if isinstance(parsed, dict) else {}), raw=data)
        if event == "error":
            return Frame(type="error", data=ErrorPayload.model_validate(parsed if isinstance(parsed, dict) else {}), raw=data)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid {event} payload", code="malformed_frame") from exc
    return Frame(type=event, data=parsed if parsed is not None else {}, raw=data)  # type: ignore[arg-type]


def encode_frame(event: str, payload: Optional[Dict[str, Any]] = None) -> str:
    """Serialise a frame to SSE wire format."""

    body = json.dumps(payload) if payload is not None else ""
    return f"event: {event}\ndata: {body}\n\n"
