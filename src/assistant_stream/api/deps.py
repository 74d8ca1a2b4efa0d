from __future__ import annotations

from fastapi import Request

from ..services.assistant_session import AssistantSession


def get_session(request: Request) -> AssistantSession:
    return request.app.state.session
