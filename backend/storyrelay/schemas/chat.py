from __future__ import annotations

from typing import Annotated, Optional

from pydantic import Field, StringConstraints

from storyrelay.schemas.common import APIModel

NonEmptyText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class ChatStreamRequest(APIModel):
    """Payload for streaming one story turn."""

    conversation_id: NonEmptyText
    story_id: NonEmptyText
    user_message: NonEmptyText
    speaker: Optional[str] = Field(default=None)
