from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyrelay.db.models import Turn
from storyrelay.repos.conversation_repo import ConversationRepo
from storyrelay.repos.memory_repo import MemoryRepo
from storyrelay.repos.turn_repo import TurnRepo
from storyrelay.services.conversation_service import ConversationOperationError

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 1000
DELETE_LAST_COUNTS = (1, 2)


@dataclass
class TurnDeletion:
    """Outcome of a turn deletion."""

    deleted_turn_ids: List[str]
    completed_turn_count: int
    last_compacted_at_turn: int


class TurnService:
    """Read and delete persisted turns while keeping the turn counter consistent."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def list_turns(self, conversation_id: str, limit: int) -> List[Turn]:
        """Return the most recent turns in chronological order."""

        limit = max(1, min(limit, MAX_LIST_LIMIT))
        async with self._sessionmaker() as db:
            await self._require_conversation(db, conversation_id)
            return await TurnRepo(db).list_recent(conversation_id, limit)

    async def delete_turn(self, conversation_id: str, turn_id: str) -> TurnDeletion:
        """Delete one turn by ID."""

        async with self._sessionmaker() as db:
            async with db.begin():
                await self._require_conversation(db, conversation_id)
                turn_repo = TurnRepo(db)
                turn = await turn_repo.get_turn(conversation_id, turn_id)
                if not turn:
                    raise ConversationOperationError("TURN_NOT_FOUND", "Turn not found.")
                await turn_repo.delete_turn(turn)
                return await self._uncount(db, conversation_id, [turn])

    async def delete_last(self, conversation_id: str, count: int = 1) -> TurnDeletion:
        """Delete the trailing turn (count=1) or the trailing exchange (count=2)."""

        if count not in DELETE_LAST_COUNTS:
            raise ConversationOperationError("INVALID_COUNT", "count must be 1 or 2.")
        async with self._sessionmaker() as db:
            async with db.begin():
                await self._require_conversation(db, conversation_id)
                deleted = await TurnRepo(db).delete_last_turns(conversation_id, count)
                if not deleted:
                    raise ConversationOperationError("TURN_NOT_FOUND", "No turns to delete.")
                return await self._uncount(db, conversation_id, deleted)

    @staticmethod
    async def _require_conversation(db: AsyncSession, conversation_id: str) -> None:
        conversation = await ConversationRepo(db).get_conversation(conversation_id)
        if not conversation:
            raise ConversationOperationError("CONVERSATION_NOT_FOUND", "Conversation not found.")

    @staticmethod
    async def _uncount(db: AsyncSession, conversation_id: str, deleted: List[Turn]) -> TurnDeletion:
        memory_repo = MemoryRepo(db)
        assistant_count = sum(1 for turn in deleted if turn.role == "assistant")
        if assistant_count:
            state = await memory_repo.decrement_completed(conversation_id, assistant_count)
        else:
            state = await memory_repo.get_or_create_state(conversation_id)
        logger.info(
            "Deleted turns conversation=%s count=%d assistant=%d completed=%d",
            conversation_id,
            len(deleted),
            assistant_count,
            state.completed_turn_count,
        )
        return TurnDeletion(
            deleted_turn_ids=[turn.id for turn in deleted],
            completed_turn_count=state.completed_turn_count,
            last_compacted_at_turn=state.last_compacted_at_turn,
        )


def get_turn_service(request: Request) -> TurnService:
    """Dependency to access the turn service from app state."""

    return request.app.state.turn_service
