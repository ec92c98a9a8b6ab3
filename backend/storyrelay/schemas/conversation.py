from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Optional

from pydantic import Field, StringConstraints

from storyrelay.db.models import MemoryState
from storyrelay.repos.memory_repo import load_plot_points
from storyrelay.schemas.common import APIModel


class ConversationCreateRequest(APIModel):
    """Payload for creating a conversation."""

    story_id: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    title: Optional[str] = Field(default=None)
    system_prompt: str = Field(default="")


class ConversationOut(APIModel):
    """Conversation metadata."""

    id: str
    story_id: str
    title: Optional[str]
    system_prompt: str
    created_at: datetime
    updated_at: datetime


class MemoryStateOut(APIModel):
    """Compacted memory and turn bookkeeping of a conversation."""

    summary: str
    key_plot_points: List[str]
    completed_turn_count: int
    last_compacted_at_turn: int
    updated_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: MemoryState) -> "MemoryStateOut":
        return cls(
            summary=state.summary_text,
            key_plot_points=load_plot_points(state),
            completed_turn_count=state.completed_turn_count,
            last_compacted_at_turn=state.last_compacted_at_turn,
            updated_at=state.updated_at,
        )


class ConversationResponse(APIModel):
    """Conversation with its memory state."""

    conversation: ConversationOut
    memory: MemoryStateOut
