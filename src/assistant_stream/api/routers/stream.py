from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ...domain.errors import FatalError
from ...domain.models import StreamPerformance, StreamStatus, Turn
from ...services.assistant_session import AssistantSession
from ..deps import get_session

router = APIRouter(prefix="/stream", tags=["stream"])


class StreamMessageRequest(BaseModel):
    prompt: str = Field(min_length=1)
    turn_id: Optional[str] = None
    expand: bool = False


class StreamMessageResponse(BaseModel):
    turn_id: str
    user_turn_id: str


class MessagesResponse(BaseModel):
    messages: List[Turn]
    streaming_id: Optional[str] = None


# Endpoints are async so driver work runs on the event loop thread.
@router.post("/messages", response_model=StreamMessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    payload: StreamMessageRequest,
    session: AssistantSession = Depends(get_session),
) -> StreamMessageResponse:
    try:
        turn_id, user_turn_id = session.send(payload.prompt, turn_id=payload.turn_id, expand=payload.expand)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except FatalError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    return StreamMessageResponse(turn_id=turn_id, user_turn_id=user_turn_id)


@router.post("/stop", response_model=StreamStatus)
async def stop_stream(session: AssistantSession = Depends(get_session)) -> StreamStatus:
    session.stop()
    return session.driver.status()


@router.get("/status", response_model=StreamStatus)
async def stream_status(session: AssistantSession = Depends(get_session)) -> StreamStatus:
    return session.driver.status()


@router.get("/messages", response_model=MessagesResponse)
async def list_messages(session: AssistantSession = Depends(get_session)) -> MessagesResponse:
    store = session.conversation.store
    return MessagesResponse(messages=list(store.messages), streaming_id=store.streaming_id)


@router.get("/performance", response_model=Optional[StreamPerformance])
async def stream_performance(session: AssistantSession = Depends(get_session)) -> Optional[StreamPerformance]:
    return session.driver.get_performance_metrics()
