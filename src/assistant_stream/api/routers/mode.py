from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ...domain.models import Mode, ModeAnalytics, ModeHealth, ModeState, ModeStats
from ...services.assistant_session import AssistantSession
from ..deps import get_session

router = APIRouter(prefix="/mode", tags=["mode"])


class TransitionRequest(BaseModel):
    mode: Mode
    reason: Optional[str] = None


class ResetRequest(BaseModel):
    reason: Optional[str] = None


@router.get("", response_model=ModeState)
async def get_mode(session: AssistantSession = Depends(get_session)) -> ModeState:
    return session.modes.get_state()


@router.get("/stats", response_model=ModeStats)
async def mode_stats(session: AssistantSession = Depends(get_session)) -> ModeStats:
    return session.modes.get_stats()


@router.get("/analytics", response_model=ModeAnalytics)
async def mode_analytics(session: AssistantSession = Depends(get_session)) -> ModeAnalytics:
    return session.modes.get_analytics()


@router.get("/health", response_model=ModeHealth)
async def mode_health(session: AssistantSession = Depends(get_session)) -> ModeHealth:
    return session.modes.get_health_status()


@router.post("/transition", response_model=ModeState)
async def transition(
    payload: TransitionRequest,
    session: AssistantSession = Depends(get_session),
) -> ModeState:
    current = session.modes.current
    if not session.modes.transition_to(payload.mode, payload.reason):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Invalid transition: {current} -> {payload.mode}",
        )
    return session.modes.get_state()


@router.post("/reset", response_model=ModeState)
async def reset(
    payload: Optional[ResetRequest] = None,
    session: AssistantSession = Depends(get_session),
) -> ModeState:
    session.modes.reset((payload.reason if payload else None) or "manual_reset")
    return session.modes.get_state()
