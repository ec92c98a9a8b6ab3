from __future__ import annotations

import json
from contextlib import aclosing
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from storyrelay.api.errors import conversation_status
from storyrelay.schemas.chat import ChatStreamRequest
from storyrelay.services.chat_stream_service import (
    ChatStreamService,
    ChatTurnRequest,
    get_chat_stream_service,
)
from storyrelay.services.conversation_service import (
    ConversationOperationError,
    ConversationService,
    get_conversation_service,
)

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("/stream")
async def stream_chat(
    payload: ChatStreamRequest,
    conversation_service: ConversationService = Depends(get_conversation_service),
    chat_service: ChatStreamService = Depends(get_chat_stream_service),
) -> StreamingResponse:
    """Relay one story turn as Server-Sent Events."""

    try:
        await conversation_service.require_story(payload.conversation_id, payload.story_id)
    except ConversationOperationError as exc:
        raise HTTPException(status_code=conversation_status(exc.code), detail=exc.message) from exc

    turn = ChatTurnRequest(
        conversation_id=payload.conversation_id,
        story_id=payload.story_id,
        user_message=payload.user_message,
        speaker=payload.speaker,
    )

    async def event_source() -> AsyncIterator[str]:
        async with aclosing(chat_service.stream_turn(turn)) as events:
            async for event in events:
                yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
