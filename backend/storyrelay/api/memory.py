from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from storyrelay.api.errors import conversation_status, provider_status
from storyrelay.providers.base import ProviderError
from storyrelay.schemas.memory import CompactRequest, CompactResponse
from storyrelay.services.compaction_scheduler import (
    CompactionScheduler,
    get_compaction_scheduler,
)
from storyrelay.services.conversation_service import ConversationOperationError

router = APIRouter(prefix="/api/memory", tags=["memory"])


@router.post("/compact", response_model=CompactResponse)
async def compact_memory(
    payload: CompactRequest,
    scheduler: CompactionScheduler = Depends(get_compaction_scheduler),
) -> CompactResponse:
    """Compact the conversation memory now."""

    try:
        outcome = await scheduler.run_now(payload.conversation_id)
    except ConversationOperationError as exc:
        raise HTTPException(status_code=conversation_status(exc.code), detail=exc.message) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=provider_status(exc.code), detail=exc.message) from exc
    return CompactResponse(
        success=True,
        summary=outcome.previous_summary,
        new_summary=outcome.summary,
        key_plot_points=outcome.plot_points,
        message_count=outcome.message_count,
    )
