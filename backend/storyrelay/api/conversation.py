from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from storyrelay.api.errors import conversation_status
from storyrelay.core.security import sanitize_text
from storyrelay.schemas.conversation import (
    ConversationCreateRequest,
    ConversationOut,
    ConversationResponse,
    MemoryStateOut,
)
from storyrelay.services.conversation_service import (
    ConversationOperationError,
    ConversationService,
    get_conversation_service,
)

router = APIRouter(prefix="/api/conversation", tags=["conversation"])

MAX_TITLE_LEN = 200
MAX_SYSTEM_PROMPT_LEN = 32000


@router.post("/create", response_model=ConversationResponse)
async def create_conversation(
    payload: ConversationCreateRequest,
    conversation_service: ConversationService = Depends(get_conversation_service),
) -> ConversationResponse:
    """Create a conversation for a story with an empty memory."""

    conversation, state = await conversation_service.create_conversation(
        story_id=payload.story_id,
        title=sanitize_text(payload.title or "", MAX_TITLE_LEN) or None,
        system_prompt=sanitize_text(payload.system_prompt, MAX_SYSTEM_PROMPT_LEN),
    )
    return ConversationResponse(
        conversation=ConversationOut.model_validate(conversation),
        memory=MemoryStateOut.from_state(state),
    )


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    conversation_service: ConversationService = Depends(get_conversation_service),
) -> ConversationResponse:
    """Return a conversation with its memory state."""

    try:
        conversation, state = await conversation_service.get_conversation(conversation_id)
    except ConversationOperationError as exc:
        raise HTTPException(status_code=conversation_status(exc.code), detail=exc.message) from exc
    return ConversationResponse(
        conversation=ConversationOut.model_validate(conversation),
        memory=MemoryStateOut.from_state(state),
    )
