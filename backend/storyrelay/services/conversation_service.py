from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyrelay.db.models import Conversation, MemoryState
from storyrelay.repos.conversation_repo import ConversationRepo
from storyrelay.repos.memory_repo import MemoryRepo


@dataclass
class ConversationOperationError(RuntimeError):
    """Domain error for conversation, turn and memory operations."""

    code: str
    message: str


class ConversationService:
    """Create and load conversations together with their memory state."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def create_conversation(
        self, story_id: str, title: Optional[str], system_prompt: str
    ) -> tuple[Conversation, MemoryState]:
        """Create a conversation with an empty memory state."""

        conversation_id = uuid.uuid4().hex
        async with self._sessionmaker() as db:
            async with db.begin():
                conversation = await ConversationRepo(db).create_conversation(
                    conversation_id=conversation_id,
                    story_id=story_id,
                    title=title,
                    system_prompt=system_prompt,
                )
                state = await MemoryRepo(db).get_or_create_state(conversation_id)
            return conversation, state

    async def get_conversation(self, conversation_id: str) -> tuple[Conversation, MemoryState]:
        """Load a conversation and its memory state."""

        async with self._sessionmaker() as db:
            async with db.begin():
                conversation = await ConversationRepo(db).get_conversation(conversation_id)
                if not conversation:
                    raise ConversationOperationError(
                        "CONVERSATION_NOT_FOUND", "Conversation not found."
                    )
                state = await MemoryRepo(db).get_or_create_state(conversation_id)
            return conversation, state

    async def require_story(self, conversation_id: str, story_id: str) -> Conversation:
        """Return the conversation when it exists and belongs to the story."""

        async with self._sessionmaker() as db:
            conversation = await ConversationRepo(db).get_conversation(conversation_id)
        if not conversation or conversation.story_id != story_id:
            raise ConversationOperationError("CONVERSATION_NOT_FOUND", "Conversation not found.")
        return conversation


def get_conversation_service(request: Request) -> ConversationService:
    """Dependency to access the conversation service from app state."""

    return request.app.state.conversation_service
