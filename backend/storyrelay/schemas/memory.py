from __future__ import annotations

from typing import Annotated, List

from pydantic import StringConstraints

from storyrelay.schemas.common import APIModel


class CompactRequest(APIModel):
    """Payload for a manual memory compaction."""

    conversation_id: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class CompactResponse(APIModel):
    """Result of a manual memory compaction."""

    success: bool
    summary: str
    new_summary: str
    key_plot_points: List[str]
    message_count: int
