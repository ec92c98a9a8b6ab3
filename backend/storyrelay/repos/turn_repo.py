from __future__ import annotations

from typing import List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storyrelay.db.models import Turn
from storyrelay.utils.time_utils import utc_now


class TurnRepo:
    """Repository for the append-only turn log."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def _next_seq(self, conversation_id: str) -> int:
        result = await self._db.execute(
            select(func.max(Turn.seq)).where(Turn.conversation_id == conversation_id)
        )
        max_seq = result.scalar_one() or 0
        return int(max_seq) + 1

    async def add_turn(
        self,
        turn_id: str,
        conversation_id: str,
        role: str,
        text: str,
        speaker: Optional[str] = None,
        model_provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> Turn:
        """Append a turn with the next sequence number.

        A concurrent writer taking the same seq surfaces as IntegrityError from
        the unique (conversation_id, seq) constraint; the caller's transaction
        is then unusable and must be rolled back as a whole.
        """

        seq = await self._next_seq(conversation_id)
        turn = Turn(
            id=turn_id,
            conversation_id=conversation_id,
            seq=seq,
            role=role,
            text=text,
            speaker=speaker,
            model_provider=model_provider,
            model_name=model_name,
            created_at=utc_now(),
        )
        self._db.add(turn)
        await self._db.flush()
        return turn

    async def list_recent(self, conversation_id: str, limit: int) -> List[Turn]:
        """Return the most recent turns in ascending order."""

        stmt = (
            select(Turn)
            .where(Turn.conversation_id == conversation_id)
            .order_by(Turn.seq.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        rows = list(result.scalars())
        rows.reverse()
        return rows

    async def list_assistant_turns(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[Turn]:
        """Return the newest assistant turns (all when limit is None) in ascending order."""

        stmt = (
            select(Turn)
            .where(Turn.conversation_id == conversation_id, Turn.role == "assistant")
            .order_by(Turn.seq.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._db.execute(stmt)
        rows = list(result.scalars())
        rows.reverse()
        return rows

    async def get_turn(self, conversation_id: str, turn_id: str) -> Optional[Turn]:
        """Fetch a turn by ID constrained to a conversation."""

        result = await self._db.execute(
            select(Turn).where(Turn.id == turn_id, Turn.conversation_id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def delete_turn(self, turn: Turn) -> None:
        """Delete one turn."""

        await self._db.execute(delete(Turn).where(Turn.id == turn.id))
        await self._db.flush()

    async def delete_last_turns(self, conversation_id: str, count: int) -> List[Turn]:
        """Delete and return the newest `count` turns (newest first)."""

        stmt = (
            select(Turn)
            .where(Turn.conversation_id == conversation_id)
            .order_by(Turn.seq.desc())
            .limit(count)
        )
        result = await self._db.execute(stmt)
        turns = list(result.scalars())
        if not turns:
            return []
        await self._db.execute(delete(Turn).where(Turn.id.in_([turn.id for turn in turns])))
        await self._db.flush()
        return turns
