from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from storyrelay.api.errors import conversation_status
from storyrelay.schemas.turns import TurnDeleteResponse, TurnListResponse, TurnOut
from storyrelay.services.chat_stream_service import ChatStreamService, get_chat_stream_service
from storyrelay.services.conversation_service import ConversationOperationError
from storyrelay.services.turn_service import TurnDeletion, TurnService, get_turn_service

router = APIRouter(prefix="/api/turns", tags=["turns"])


@router.get("/{conversation_id}", response_model=TurnListResponse)
async def list_turns(
    conversation_id: str,
    limit: int = Query(default=20),
    turn_service: TurnService = Depends(get_turn_service),
) -> TurnListResponse:
    """Return the most recent turns in chronological order."""

    try:
        turns = await turn_service.list_turns(conversation_id, limit)
    except ConversationOperationError as exc:
        raise HTTPException(status_code=conversation_status(exc.code), detail=exc.message) from exc
    return TurnListResponse(turns=[TurnOut.model_validate(turn) for turn in turns])


@router.delete("/{conversation_id}/last", response_model=TurnDeleteResponse)
async def delete_last_turns(
    conversation_id: str,
    count: int = Query(default=1),
    turn_service: TurnService = Depends(get_turn_service),
    chat_service: ChatStreamService = Depends(get_chat_stream_service),
) -> TurnDeleteResponse:
    """Delete the trailing turn or the trailing user/assistant pair."""

    _ensure_idle(conversation_id, chat_service)
    try:
        deletion = await turn_service.delete_last(conversation_id, count)
    except ConversationOperationError as exc:
        raise HTTPException(status_code=conversation_status(exc.code), detail=exc.message) from exc
    return _deletion_response(deletion)


@router.delete("/{conversation_id}/{turn_id}", response_model=TurnDeleteResponse)
async def delete_turn(
    conversation_id: str,
    turn_id: str,
    turn_service: TurnService = Depends(get_turn_service),
    chat_service: ChatStreamService = Depends(get_chat_stream_service),
) -> TurnDeleteResponse:
    """Delete one turn."""

    _ensure_idle(conversation_id, chat_service)
    try:
        deletion = await turn_service.delete_turn(conversation_id, turn_id)
    except ConversationOperationError as exc:
        raise HTTPException(status_code=conversation_status(exc.code), detail=exc.message) from exc
    return _deletion_response(deletion)


def _ensure_idle(conversation_id: str, chat_service: ChatStreamService) -> None:
    if chat_service.is_streaming(conversation_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A turn is being written. Retry deletion after it finishes.",
        )


def _deletion_response(deletion: TurnDeletion) -> TurnDeleteResponse:
    return TurnDeleteResponse(
        deleted_turn_ids=deletion.deleted_turn_ids,
        completed_turn_count=deletion.completed_turn_count,
        last_compacted_at_turn=deletion.last_compacted_at_turn,
    )
