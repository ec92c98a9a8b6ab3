from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storyrelay.db.models import Conversation
from storyrelay.utils.time_utils import utc_now


class ConversationRepo:
    """Repository for conversation persistence."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def create_conversation(
        self,
        conversation_id: str,
        story_id: str,
        title: Optional[str],
        system_prompt: str,
    ) -> Conversation:
        """Persist a new conversation and return it."""

        conversation = Conversation(
            id=conversation_id,
            story_id=story_id,
            title=title,
            system_prompt=system_prompt,
            created_at=utc_now(),
            updated_at=utc_now(),
        )
        self._db.add(conversation)
        await self._db.flush()
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Fetch a conversation by ID."""

        result = await self._db.execute(
            select(Conversation).where(Conversation.id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def touch(self, conversation_id: str) -> None:
        """Bump the conversation update timestamp."""

        conversation = await self.get_conversation(conversation_id)
        if conversation:
            conversation.updated_at = utc_now()
            await self._db.flush()
