"""
Chat turn endpoints.

Endpoints:
    - POST /api/chat            - Blocking turn, returns {"reply": "..."}
    - POST /api/chat/stream     - Streaming turn (text/event-stream)
    - POST /api/chat/regenerate - Replace the last assistant answer

Request bodies accept ``threadId`` or ``thread_id``:
{
    "threadId": "3f1c...",
    "message": "Hello"
}

Validation and thread loading happen before a stream is opened, so those
failures are plain JSON errors (``{"error": "..."}``) rather than frames.

Streaming response frames:
    data: {"token": "Hi"}
    data: {"token": " there"}
    data: {"done": true}

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import structlog
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from cortex_chat.services.relay import StreamRelay, TurnSession

logger = structlog.get_logger(__name__)

router = APIRouter()

# Headers for relay event streams
STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


# ============================================================================
# Request / Response Models
# ============================================================================

class ChatRequest(BaseModel):
    """
    Chat turn request.

    Both fields are optional at the schema level so that a missing value is
    reported with the same message as a blank one.

    Attributes:
        thread_id: Client-generated thread identifier (alias ``threadId``)
        message: User message text
    """
    model_config = ConfigDict(populate_by_name=True)

    thread_id: Optional[str] = Field(default=None, alias="threadId")
    message: Optional[str] = None


class RegenerateRequest(BaseModel):
    """Regenerate request; ``stream`` selects the event-stream response."""
    model_config = ConfigDict(populate_by_name=True)

    thread_id: Optional[str] = Field(default=None, alias="threadId")
    stream: bool = False


class ChatReply(BaseModel):
    reply: str


# ============================================================================
# Dependencies
# ============================================================================

def get_relay(request: Request) -> StreamRelay:
    """Relay wired by the application lifespan."""
    return request.app.state.relay


def _event_stream(relay: StreamRelay, session: TurnSession) -> StreamingResponse:
    return StreamingResponse(
        relay.stream_turn(session),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/api/chat", response_model=ChatReply)
async def chat(request: ChatRequest, relay: StreamRelay = Depends(get_relay)):
    """
    Run one blocking turn.

    Upstream failures are replaced by the fallback reply, which is committed
    like any other answer. Storage failures surface as 500.

    Returns:
        ChatReply: ``{"reply": "<full text>"}``

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    session = await relay.open_turn(request.thread_id, request.message)
    reply = await relay.run_turn(session)
    return ChatReply(reply=reply)


@router.post("/api/chat/stream")
async def chat_stream(request: ChatRequest, relay: StreamRelay = Depends(get_relay)):
    """
    Run one streaming turn.

    Returns:
        StreamingResponse: token frames followed by exactly one ``done`` or
        ``error`` frame

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    session = await relay.open_turn(request.thread_id, request.message)
    return _event_stream(relay, session)


@router.post("/api/chat/regenerate")
async def regenerate(request: RegenerateRequest, relay: StreamRelay = Depends(get_relay)):
    """
    Drop the trailing assistant answer and produce a new one.

    The thread keeps its message count: one answer removed, one added.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    session = await relay.open_regeneration(request.thread_id)
    if request.stream:
        return _event_stream(relay, session)
    reply = await relay.run_turn(session)
    return ChatReply(reply=reply)
