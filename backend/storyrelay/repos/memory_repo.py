from __future__ import annotations

import json
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storyrelay.db.models import MemoryState
from storyrelay.utils.time_utils import utc_now


def load_plot_points(state: MemoryState) -> list[str]:
    """Decode the stored plot-point list, tolerating legacy or corrupt values."""

    raw = (state.plot_points_json or "").strip()
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, str) and item.strip()]


class MemoryRepo:
    """Repository for per-conversation memory state and turn counters."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_state(self, conversation_id: str) -> Optional[MemoryState]:
        """Fetch the memory state row for a conversation."""

        result = await self._db.execute(
            select(MemoryState).where(MemoryState.conversation_id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_state(self, conversation_id: str) -> MemoryState:
        """Return the memory state, creating the empty default when missing."""

        state = await self.get_state(conversation_id)
        if state:
            return state
        state = MemoryState(
            conversation_id=conversation_id,
            summary_text="",
            plot_points_json="[]",
            completed_turn_count=0,
            last_compacted_at_turn=0,
            updated_at=utc_now(),
        )
        self._db.add(state)
        await self._db.flush()
        return state

    async def increment_completed(self, conversation_id: str) -> MemoryState:
        """Count one more completed assistant turn."""

        state = await self.get_or_create_state(conversation_id)
        state.completed_turn_count += 1
        state.updated_at = utc_now()
        await self._db.flush()
        return state

    async def decrement_completed(self, conversation_id: str, count: int = 1) -> MemoryState:
        """Uncount deleted assistant turns, keeping last_compacted <= completed."""

        state = await self.get_or_create_state(conversation_id)
        state.completed_turn_count = max(0, state.completed_turn_count - count)
        if state.last_compacted_at_turn > state.completed_turn_count:
            state.last_compacted_at_turn = state.completed_turn_count
        state.updated_at = utc_now()
        await self._db.flush()
        return state

    async def commit_compaction(
        self,
        conversation_id: str,
        *,
        summary_text: str,
        plot_points: Sequence[str],
        compacted_at_turn: int,
    ) -> MemoryState:
        """Write a compaction result and advance the compaction marker."""

        state = await self.get_or_create_state(conversation_id)
        state.summary_text = summary_text
        state.plot_points_json = json.dumps(list(plot_points), ensure_ascii=False)
        state.last_compacted_at_turn = max(
            0, min(compacted_at_turn, state.completed_turn_count)
        )
        state.updated_at = utc_now()
        await self._db.flush()
        return state
