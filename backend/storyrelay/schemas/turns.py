from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from storyrelay.schemas.common import APIModel


class TurnOut(APIModel):
    """Serialized persisted turn."""

    id: str
    conversation_id: str
    seq: int
    role: Literal["user", "assistant"]
    text: str
    speaker: Optional[str]
    model_provider: Optional[str]
    model_name: Optional[str]
    created_at: datetime


class TurnListResponse(APIModel):
    """Most recent turns in chronological order."""

    turns: List[TurnOut]


class TurnDeleteResponse(APIModel):
    """Response returned after deleting turns."""

    deleted_turn_ids: List[str]
    completed_turn_count: int
    last_compacted_at_turn: int
